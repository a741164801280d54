"""Daily consolidation of accepted readings into anchored batches.

One batch exists per vehicle and UTC day. ``consolidate_day`` is the single
entry point shared by the scheduled run, the sweep of failed batches and
on-demand triggers (end-of-day hints, the CLI).

A batch attempt goes through three short transactions:

1. upsert the digest and claim the next attempt (a compare-and-swap on
   ``attempts`` guarded by a lease so two workers never submit together);
2. submit the digest to the anchor with no transaction open;
3. record the reference, or the failure.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from odometer_guard.consolidation.digest import DayDigest, compute_day_digest
from odometer_guard.exceptions import AnchorError, PersistenceError
from odometer_guard.storage.repos import (
    DailyBatchDTO,
    DailyBatchRepository,
    TelemetryReadingRepository,
)

if TYPE_CHECKING:
    from odometer_guard.consolidation.anchor import AnchorClient
    from odometer_guard.trust.engine import SessionFactory

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default configuration
DEFAULT_MAX_CONCURRENCY = 5
DEFAULT_ANCHOR_TIMEOUT_SECONDS = 60.0
DEFAULT_VEHICLE_TIMEOUT_SECONDS = 180.0
DEFAULT_MAX_ANCHOR_ATTEMPTS = 5
DEFAULT_SWEEP_LIMIT = 10


class ConsolidationStatus(str, Enum):
    """Outcome of one ``consolidate_day`` call."""

    ANCHORED = "anchored"
    SKIPPED = "skipped"  # already anchored
    EMPTY = "empty"  # no accepted readings that day
    PENDING = "pending"  # stored but not anchored (dry run, or digest changed mid-flight)
    IN_FLIGHT = "in_flight"  # another worker holds the attempt
    FAILED = "failed"
    EXHAUSTED = "exhausted"  # attempt cap reached


@dataclass(frozen=True)
class ConsolidationResult:
    vehicle_id: str
    batch_date: date
    status: ConsolidationStatus
    digest: str | None = None
    reading_count: int = 0
    attempts: int = 0
    anchor_reference: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "vehicleId": self.vehicle_id,
            "batchDate": self.batch_date.isoformat(),
            "status": self.status.value,
            "digest": self.digest,
            "readingCount": self.reading_count,
            "attempts": self.attempts,
            "anchorReference": self.anchor_reference,
            "error": self.error,
        }


@dataclass
class ConsolidationRunStats:
    """Statistics for one scheduled (or manual) run."""

    batch_date: date | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    processed: int = 0
    anchored: int = 0
    failed: int = 0
    skipped: int = 0
    empty: int = 0
    pending: int = 0
    in_flight: int = 0
    exhausted: int = 0
    swept: int = 0
    errors: int = 0

    def record(self, result: ConsolidationResult) -> None:
        self.processed += 1
        counter = result.status.value
        setattr(self, counter, getattr(self, counter) + 1)

    def to_dict(self) -> dict[str, object]:
        return {
            "batchDate": self.batch_date.isoformat() if self.batch_date else None,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "processed": self.processed,
            "anchored": self.anchored,
            "failed": self.failed,
            "skipped": self.skipped,
            "empty": self.empty,
            "pending": self.pending,
            "inFlight": self.in_flight,
            "exhausted": self.exhausted,
            "swept": self.swept,
            "errors": self.errors,
        }


def _utcnow() -> datetime:
    return datetime.now(UTC)


class DailyConsolidationJob:
    """Builds daily digests and anchors them.

    Args:
        session_factory: Unit-of-work factory (``DatabaseManager.get_async_session``).
        anchor: Anchor client, or None to only store pending batches (dry run).
        max_concurrency: Vehicles consolidated at once during a run.
        anchor_timeout_seconds: Timeout for one ``anchor.submit`` call.
        vehicle_timeout_seconds: Timeout for one vehicle during a run. Also
            the lease an in-flight attempt holds on its batch.
        max_anchor_attempts: Attempts after which a batch needs ``force=True``.
        sweep_limit: Batches retried per sweep.
        clock: Returns the current UTC time (tests).
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        anchor: AnchorClient | None,
        *,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        anchor_timeout_seconds: float = DEFAULT_ANCHOR_TIMEOUT_SECONDS,
        vehicle_timeout_seconds: float = DEFAULT_VEHICLE_TIMEOUT_SECONDS,
        max_anchor_attempts: int = DEFAULT_MAX_ANCHOR_ATTEMPTS,
        sweep_limit: int = DEFAULT_SWEEP_LIMIT,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._session_factory = session_factory
        self._anchor = anchor
        self._max_concurrency = max_concurrency
        self._anchor_timeout = anchor_timeout_seconds
        self._vehicle_timeout = vehicle_timeout_seconds
        self._lease = timedelta(seconds=vehicle_timeout_seconds)
        self._max_attempts = max_anchor_attempts
        self._sweep_limit = sweep_limit
        self._clock = clock or _utcnow

    @property
    def dry_run(self) -> bool:
        return self._anchor is None

    async def consolidate_day(
        self,
        vehicle_id: str,
        batch_date: date,
        *,
        force: bool = False,
    ) -> ConsolidationResult:
        """Digest and anchor one vehicle's accepted readings for one day.

        Idempotent: an anchored batch is returned as ``skipped`` untouched.

        Args:
            vehicle_id: Vehicle to consolidate.
            batch_date: UTC calendar day.
            force: Ignore an in-flight lease and the attempt cap.

        Raises:
            PersistenceError: Storage failure.
        """
        try:
            prepared = await self._prepare(vehicle_id, batch_date, force=force)
        except SQLAlchemyError as e:
            logger.error("Persistence failure consolidating %s/%s: %s", vehicle_id, batch_date, e)
            raise PersistenceError(f"Failed to consolidate {vehicle_id}/{batch_date}") from e
        if isinstance(prepared, ConsolidationResult):
            return prepared

        if self._anchor is None:
            raise AnchorError(
                "No anchor client configured", vehicle_id=vehicle_id, batch_date=batch_date
            )
        batch, digest = prepared
        attempt = batch.attempts + 1
        try:
            receipt = await asyncio.wait_for(
                self._anchor.submit(vehicle_id, batch_date, digest.root),
                timeout=self._anchor_timeout,
            )
        except (AnchorError, TimeoutError) as e:
            error = str(e) or f"anchor submission timed out after {self._anchor_timeout}s"
            return await self._record_failure(batch, digest, attempt, error)

        try:
            async with self._session_factory() as session:
                marked = await DailyBatchRepository(session).mark_anchored(
                    batch.id,  # type: ignore[arg-type]
                    attempt=attempt,
                    digest=digest.root,
                    anchor_reference=receipt.reference,
                    anchored_at=self._clock(),
                )
        except SQLAlchemyError as e:
            # The digest is on the ledger but not recorded; a later attempt re-anchors it.
            logger.error(
                "Anchored %s/%s as %s but failed to record it: %s",
                vehicle_id,
                batch_date,
                receipt.reference,
                e,
            )
            raise PersistenceError(f"Failed to record anchor for {vehicle_id}/{batch_date}") from e

        if not marked:
            logger.warning(
                "Anchor %s for %s/%s not recorded: batch changed during submission",
                receipt.reference,
                vehicle_id,
                batch_date,
            )
            return ConsolidationResult(
                vehicle_id=vehicle_id,
                batch_date=batch_date,
                status=ConsolidationStatus.PENDING,
                digest=digest.root,
                reading_count=digest.reading_count,
                attempts=attempt,
                anchor_reference=receipt.reference,
            )

        logger.info(
            "Consolidated %s/%s: %d readings, %d km, digest=%s anchor=%s",
            vehicle_id,
            batch_date,
            digest.reading_count,
            digest.total_distance,
            digest.root[:12],
            receipt.reference,
        )
        return ConsolidationResult(
            vehicle_id=vehicle_id,
            batch_date=batch_date,
            status=ConsolidationStatus.ANCHORED,
            digest=digest.root,
            reading_count=digest.reading_count,
            attempts=attempt,
            anchor_reference=receipt.reference,
        )

    async def _prepare(
        self,
        vehicle_id: str,
        batch_date: date,
        *,
        force: bool,
    ) -> ConsolidationResult | tuple[DailyBatchDTO, DayDigest]:
        """Upsert the batch and claim an attempt in one transaction."""
        async with self._session_factory() as session:
            batches = DailyBatchRepository(session)
            readings = await TelemetryReadingRepository(session).list_accepted_for_day(
                vehicle_id, batch_date
            )

            existing = await batches.get(vehicle_id, batch_date)
            if existing is not None and existing.is_anchored:
                return self._skipped(existing, len(readings))

            if not readings:
                logger.debug("No accepted readings for %s on %s", vehicle_id, batch_date)
                return ConsolidationResult(
                    vehicle_id=vehicle_id,
                    batch_date=batch_date,
                    status=ConsolidationStatus.EMPTY,
                )

            digest = compute_day_digest(vehicle_id, batch_date, readings)
            batch = await batches.upsert_for_day(
                DailyBatchDTO(
                    vehicle_id=vehicle_id,
                    batch_date=batch_date,
                    reading_count=digest.reading_count,
                    digest=digest.root,
                    start_mileage=digest.start_mileage,
                    end_mileage=digest.end_mileage,
                    total_distance=digest.total_distance,
                    segment_count=len(digest.segments),
                    segments_json=digest.segments_json(),
                )
            )
            if batch is None:
                anchored = await batches.get(vehicle_id, batch_date)
                if anchored is None:
                    raise PersistenceError(f"Batch {vehicle_id}/{batch_date} vanished during upsert")
                return self._skipped(anchored, len(readings))

            result = ConsolidationResult(
                vehicle_id=vehicle_id,
                batch_date=batch_date,
                status=ConsolidationStatus.PENDING,
                digest=digest.root,
                reading_count=digest.reading_count,
                attempts=batch.attempts,
            )
            if self._anchor is None:
                logger.info(
                    "[DRY RUN] Batch %s/%s stored as pending (digest=%s)",
                    vehicle_id,
                    batch_date,
                    digest.root[:12],
                )
                return result

            if not force and batch.attempts >= self._max_attempts:
                logger.error(
                    "Anchoring exhausted for %s/%s after %d attempts; manual trigger required",
                    vehicle_id,
                    batch_date,
                    batch.attempts,
                )
                return dataclasses.replace(
                    result, status=ConsolidationStatus.EXHAUSTED, error=batch.last_error
                )

            now = self._clock()
            claimed = await batches.claim_attempt(
                batch.id,  # type: ignore[arg-type]
                seen_attempts=batch.attempts,
                now=now,
                lease_cutoff=now - self._lease,
                ignore_lease=force,
            )
            if not claimed:
                logger.info("Batch %s/%s is being anchored by another worker", vehicle_id, batch_date)
                return dataclasses.replace(result, status=ConsolidationStatus.IN_FLIGHT)

        return batch, digest

    def _skipped(self, batch: DailyBatchDTO, current_count: int) -> ConsolidationResult:
        if current_count > batch.reading_count:
            logger.warning(
                "%d late reading(s) for %s on %s after anchoring; not re-anchored",
                current_count - batch.reading_count,
                batch.vehicle_id,
                batch.batch_date,
            )
        return ConsolidationResult(
            vehicle_id=batch.vehicle_id,
            batch_date=batch.batch_date,
            status=ConsolidationStatus.SKIPPED,
            digest=batch.digest,
            reading_count=batch.reading_count,
            attempts=batch.attempts,
            anchor_reference=batch.anchor_reference,
        )

    async def _record_failure(
        self,
        batch: DailyBatchDTO,
        digest: DayDigest,
        attempt: int,
        error: str,
    ) -> ConsolidationResult:
        async with self._session_factory() as session:
            await DailyBatchRepository(session).mark_failed(
                batch.vehicle_id, batch.batch_date, error=error, attempt=attempt
            )
        log = logger.error if attempt >= self._max_attempts else logger.warning
        log(
            "Anchoring failed for %s/%s (attempt %d/%d): %s",
            batch.vehicle_id,
            batch.batch_date,
            attempt,
            self._max_attempts,
            error,
        )
        return ConsolidationResult(
            vehicle_id=batch.vehicle_id,
            batch_date=batch.batch_date,
            status=ConsolidationStatus.FAILED,
            digest=digest.root,
            reading_count=digest.reading_count,
            attempts=attempt,
            error=error,
        )

    async def _consolidate_with_timeout(self, vehicle_id: str, batch_date: date) -> ConsolidationResult:
        try:
            return await asyncio.wait_for(
                self.consolidate_day(vehicle_id, batch_date),
                timeout=self._vehicle_timeout,
            )
        except TimeoutError:
            error = f"consolidation timed out after {self._vehicle_timeout}s"
            async with self._session_factory() as session:
                await DailyBatchRepository(session).mark_failed(vehicle_id, batch_date, error=error)
            logger.warning("Consolidation of %s/%s timed out", vehicle_id, batch_date)
            return ConsolidationResult(
                vehicle_id=vehicle_id,
                batch_date=batch_date,
                status=ConsolidationStatus.FAILED,
                error=error,
            )

    async def _fan_out(
        self,
        items: Sequence[T],
        work: Callable[[T], Awaitable[ConsolidationResult]],
    ) -> list[ConsolidationResult | BaseException]:
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def bounded(item: T) -> ConsolidationResult:
            async with semaphore:
                return await work(item)

        return list(await asyncio.gather(*(bounded(i) for i in items), return_exceptions=True))

    async def run(self, for_date: date | None = None) -> ConsolidationRunStats:
        """Consolidate every vehicle with accepted readings on ``for_date``.

        Defaults to yesterday (UTC). A failure for one vehicle never affects
        the others. Failed batches from earlier runs are swept afterwards.
        """
        started = self._clock()
        batch_date = for_date or (started.date() - timedelta(days=1))
        stats = ConsolidationRunStats(batch_date=batch_date, started_at=started)

        async with self._session_factory() as session:
            vehicles = await TelemetryReadingRepository(session).list_vehicles_with_accepted(batch_date)
            already = set(await DailyBatchRepository(session).list_anchored_for_date(batch_date))

        todo = [v for v in vehicles if v not in already]
        stats.skipped += len(vehicles) - len(todo)
        logger.info(
            "Consolidation run for %s: %d vehicle(s), %d already anchored",
            batch_date,
            len(vehicles),
            len(vehicles) - len(todo),
        )

        results = await self._fan_out(
            todo, lambda v: self._consolidate_with_timeout(v, batch_date)
        )
        for vehicle_id, result in zip(todo, results, strict=True):
            if isinstance(result, BaseException):
                stats.errors += 1
                logger.error("Consolidation of %s/%s failed: %s", vehicle_id, batch_date, result)
            else:
                stats.record(result)

        for result in await self.sweep(started):
            stats.swept += 1
            stats.record(result)

        stats.finished_at = self._clock()
        logger.info(
            "Consolidation run for %s done: anchored=%d failed=%d skipped=%d empty=%d "
            "pending=%d swept=%d errors=%d",
            batch_date,
            stats.anchored,
            stats.failed,
            stats.skipped,
            stats.empty,
            stats.pending,
            stats.swept,
            stats.errors,
        )
        return stats

    async def sweep(self, before: datetime) -> list[ConsolidationResult]:
        """Retry failed and stale pending batches last attempted before ``before``.

        Batches at the attempt cap are not retried; each sweep reports them
        at ERROR level until someone forces them through.
        """
        if self._anchor is None:
            return []

        async with self._session_factory() as session:
            batches = DailyBatchRepository(session)
            retryable = await batches.list_retryable(
                attempted_before=before,
                max_attempts=self._max_attempts,
                limit=self._sweep_limit,
            )
            exhausted = await batches.list_exhausted(max_attempts=self._max_attempts)

        for batch in exhausted:
            logger.error(
                "Batch %s/%s still unanchored after %d attempts: %s",
                batch.vehicle_id,
                batch.batch_date,
                batch.attempts,
                batch.last_error,
            )

        if not retryable:
            return []
        logger.info("Sweeping %d unanchored batch(es)", len(retryable))

        results = await self._fan_out(
            retryable,
            lambda b: self._consolidate_with_timeout(b.vehicle_id, b.batch_date),
        )
        done: list[ConsolidationResult] = []
        for batch, result in zip(retryable, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    "Sweep of %s/%s failed: %s", batch.vehicle_id, batch.batch_date, result
                )
                continue
            done.append(result)
        return done

