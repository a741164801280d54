"""Command line entry point.

Usage:
    python -m odometer_guard run
    python -m odometer_guard init-db
    python -m odometer_guard register-vehicle veh-1 --mileage 65076 --vin WVWZZZ1JZXW000001
    python -m odometer_guard ingest readings.jsonl
    python -m odometer_guard consolidate --date 2026-10-18 [--vehicle veh-1] [--force]
    python -m odometer_guard recompute-trust veh-1
    python -m odometer_guard alerts [--vehicle veh-1]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import date
from typing import Any, TextIO

from pydantic import ValidationError

from odometer_guard.alerter.formatter import format_alert_text
from odometer_guard.alerter.manager import FraudAlertManager
from odometer_guard.config import Settings, get_settings
from odometer_guard.exceptions import OdometerGuardError
from odometer_guard.logging_setup import configure_logging
from odometer_guard.pipeline import Pipeline
from odometer_guard.storage.database import DatabaseManager
from odometer_guard.trust.engine import TrustScoreEngine

logger = logging.getLogger(__name__)


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}") from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="odometer_guard",
        description="Odometer fraud detection and daily mileage anchoring",
    )
    parser.add_argument("--dry-run", action="store_true", help="Never submit anchor transactions")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run the pipeline and the nightly consolidation scheduler")
    sub.add_parser("init-db", help="Create database tables")

    register = sub.add_parser("register-vehicle", help="Create mileage state for a vehicle")
    register.add_argument("vehicle_id")
    register.add_argument("--mileage", type=int, default=0, help="Initial verified mileage")
    register.add_argument("--vin", help="Vehicle identification number")

    ingest = sub.add_parser("ingest", help="Validate JSON-lines readings from FILE (or stdin)")
    ingest.add_argument("file", nargs="?", help="JSON-lines file (default: stdin)")

    consolidate = sub.add_parser("consolidate", help="Consolidate and anchor one day")
    consolidate.add_argument("--date", type=_parse_date, required=True, dest="batch_date")
    consolidate.add_argument("--vehicle", dest="vehicle_id", help="Only this vehicle")
    consolidate.add_argument(
        "--force", action="store_true", help="Ignore in-flight leases and the attempt cap"
    )

    recompute = sub.add_parser("recompute-trust", help="Replay a vehicle's trust event log")
    recompute.add_argument("vehicle_id")

    alerts = sub.add_parser("alerts", help="List active fraud alerts")
    alerts.add_argument("--vehicle", dest="vehicle_id")

    return parser


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


async def _run(settings: Settings, dry_run: bool) -> int:
    settings.validate_requirements(command="run")
    pipeline = Pipeline(settings, dry_run=dry_run)
    await pipeline.run()
    return 0


async def _init_db(settings: Settings) -> int:
    db = DatabaseManager(settings.database.url, pool_size=settings.database.pool_size)
    try:
        await db.init_schema_async()
    finally:
        await db.dispose_async()
    logger.info("Database schema created")
    return 0


async def _register_vehicle(settings: Settings, args: argparse.Namespace) -> int:
    async with Pipeline(settings, dry_run=True, enable_scheduler=False) as pipeline:
        state = await pipeline.validator.register_vehicle(
            args.vehicle_id, initial_mileage=args.mileage, vin=args.vin
        )
    _print_json(
        {
            "vehicleId": state.vehicle_id,
            "vin": state.vin,
            "lastVerifiedMileage": state.last_verified_mileage,
            "trustScore": state.trust_score,
        }
    )
    return 0


async def _ingest(settings: Settings, dry_run: bool, stream: TextIO) -> int:
    failures = 0
    async with Pipeline(settings, dry_run=dry_run, enable_scheduler=False) as pipeline:
        for line_no, line in enumerate(stream, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError as e:
                logger.warning("Line %d is not valid JSON: %s", line_no, e)
                failures += 1
                continue
            response = await pipeline.ingest(payload)
            if response.http_status >= 500:
                failures += 1
            print(json.dumps({"line": line_no, "httpStatus": response.http_status, **response.body}))
    return 1 if failures else 0


async def _consolidate(settings: Settings, dry_run: bool, args: argparse.Namespace) -> int:
    settings.validate_requirements(command="consolidate")
    async with Pipeline(settings, dry_run=dry_run, enable_scheduler=False) as pipeline:
        result = await pipeline.consolidate(
            args.batch_date, vehicle_id=args.vehicle_id, force=args.force
        )
    _print_json(result.to_dict())
    return 0


async def _recompute_trust(settings: Settings, vehicle_id: str) -> int:
    db = DatabaseManager(settings.database.url)
    try:
        engine = TrustScoreEngine(db.get_async_session)
        result = await engine.recompute(vehicle_id)
    finally:
        await db.dispose_async()
    _print_json(
        {
            "vehicleId": result.vehicle_id,
            "storedScore": result.stored_score,
            "computedScore": result.computed_score,
            "eventCount": result.event_count,
            "consistent": result.consistent,
        }
    )
    return 0 if result.consistent else 1


async def _alerts(settings: Settings, vehicle_id: str | None) -> int:
    db = DatabaseManager(settings.database.url)
    try:
        alerts = await FraudAlertManager(db.get_async_session).list_active(vehicle_id)
    finally:
        await db.dispose_async()
    if not alerts:
        print("No active alerts")
    for alert in alerts:
        print(format_alert_text(alert))
        print()
    return 0


async def _dispatch(settings: Settings, args: argparse.Namespace) -> int:
    dry_run = args.dry_run or settings.dry_run
    if args.command == "run":
        return await _run(settings, dry_run)
    if args.command == "init-db":
        return await _init_db(settings)
    if args.command == "register-vehicle":
        return await _register_vehicle(settings, args)
    if args.command == "ingest":
        if args.file:
            with open(args.file, encoding="utf-8") as f:
                return await _ingest(settings, dry_run, f)
        return await _ingest(settings, dry_run, sys.stdin)
    if args.command == "consolidate":
        return await _consolidate(settings, dry_run, args)
    if args.command == "recompute-trust":
        return await _recompute_trust(settings, args.vehicle_id)
    if args.command == "alerts":
        return await _alerts(settings, args.vehicle_id)
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings()
    except ValidationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2
    if args.dry_run:
        settings = settings.model_copy(update={"dry_run": True})

    configure_logging(settings.get_logging_level(), settings.log_format)
    logger.debug("Settings: %s", settings.redacted_summary())

    try:
        return asyncio.run(_dispatch(settings, args))
    except KeyboardInterrupt:
        return 130
    except (OdometerGuardError, ValueError) as e:
        logger.error("%s failed: %s", args.command, e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
