"""Main pipeline orchestrator for Odometer Guard.

This module provides the Pipeline class that wires together validation,
trust scoring, fraud alerting and daily consolidation, and manages their
lifecycle.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from odometer_guard.alerter.manager import FraudAlertManager
from odometer_guard.config import Settings, get_settings
from odometer_guard.consolidation.anchor import PolygonAnchorClient
from odometer_guard.consolidation.job import (
    ConsolidationResult,
    ConsolidationRunStats,
    DailyConsolidationJob,
)
from odometer_guard.consolidation.scheduler import ConsolidationScheduler
from odometer_guard.ingestor.gateway import EndOfDayHint, IngestionGateway
from odometer_guard.ingestor.models import IngestResponse, IngestStatus
from odometer_guard.storage.database import DatabaseManager
from odometer_guard.storage.repos import FraudAlertDTO
from odometer_guard.trust.engine import TrustScoreEngine
from odometer_guard.trust.notifier import RedisTrustNotifier
from odometer_guard.validator.mileage import MileageValidator
from odometer_guard.validator.models import ValidationThresholds

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    """Pipeline lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class PipelineStats:
    """Statistics for the pipeline."""

    started_at: datetime | None = None
    readings_processed: int = 0
    readings_accepted: int = 0
    readings_flagged: int = 0
    readings_rejected: int = 0
    readings_retried: int = 0
    alerts_raised: int = 0
    errors: int = 0
    last_reading_time: datetime | None = None
    last_error: str | None = None


class Pipeline:
    """Main pipeline orchestrator for Odometer Guard.

    Pipeline flow:
        Device message → Ingestion Gateway → Mileage Validator
            → {State Store, Trust Engine, Fraud Alerts}
        Nightly → Consolidation Job → Anchor (Polygon)

    Example:
        ```python
        from odometer_guard.config import get_settings
        from odometer_guard.pipeline import Pipeline

        settings = get_settings()
        async with Pipeline(settings) as pipeline:
            response = await pipeline.ingest(
                {"vehicleId": "veh-1", "deviceId": "dev-42", "mileage": 65081}
            )
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        dry_run: bool | None = None,
        enable_scheduler: bool = True,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            dry_run: If True, never submit anchor transactions. Overrides settings.dry_run.
            enable_scheduler: Run the nightly consolidation scheduler.
        """
        self._settings = settings or get_settings()
        self._dry_run = dry_run if dry_run is not None else self._settings.dry_run
        self._enable_scheduler = enable_scheduler

        self._state = PipelineState.STOPPED
        self._stats = PipelineStats()
        self._stop_event: asyncio.Event | None = None

        # Components (initialized in start())
        self._redis: Redis | None = None
        self._db_manager: DatabaseManager | None = None
        self._trust_engine: TrustScoreEngine | None = None
        self._alert_manager: FraudAlertManager | None = None
        self._validator: MileageValidator | None = None
        self._anchor_client: PolygonAnchorClient | None = None
        self._consolidation_job: DailyConsolidationJob | None = None
        self._scheduler: ConsolidationScheduler | None = None
        self._eod_hint: EndOfDayHint | None = None
        self._gateway: IngestionGateway | None = None

    @property
    def state(self) -> PipelineState:
        """Current pipeline state."""
        return self._state

    @property
    def stats(self) -> PipelineStats:
        """Current pipeline statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        """Check if pipeline is running."""
        return self._state == PipelineState.RUNNING

    @property
    def validator(self) -> MileageValidator:
        return self._require(self._validator, "validator")

    @property
    def trust_engine(self) -> TrustScoreEngine:
        return self._require(self._trust_engine, "trust engine")

    @property
    def alert_manager(self) -> FraudAlertManager:
        return self._require(self._alert_manager, "alert manager")

    @property
    def consolidation_job(self) -> DailyConsolidationJob:
        return self._require(self._consolidation_job, "consolidation job")

    @property
    def scheduler(self) -> ConsolidationScheduler | None:
        return self._scheduler

    @staticmethod
    def _require(component: Any, name: str) -> Any:
        if component is None:
            raise RuntimeError(f"Pipeline {name} is not initialized; call start() first")
        return component

    async def start(self) -> None:
        """Start the pipeline.

        Initializes all components and starts the consolidation scheduler.

        Raises:
            RuntimeError: If pipeline is already running.
            Exception: If any component fails to initialize.
        """
        if self._state != PipelineState.STOPPED:
            raise RuntimeError(f"Cannot start pipeline in state {self._state}")

        self._state = PipelineState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting pipeline...")

        try:
            await self._initialize_components()
            await self._start_background_services()
            self._stats.started_at = datetime.now(UTC)
            self._state = PipelineState.RUNNING
            logger.info("Pipeline started successfully (dry_run=%s)", self._dry_run)
        except Exception as e:
            self._state = PipelineState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start pipeline: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the pipeline gracefully.

        Stops the scheduler, waits briefly for in-flight end-of-day
        consolidations and releases connections.
        """
        if self._state == PipelineState.STOPPED:
            return

        self._state = PipelineState.STOPPING
        logger.info("Stopping pipeline...")

        if self._stop_event:
            self._stop_event.set()

        await self._stop_background_services()
        await self._cleanup()

        self._state = PipelineState.STOPPED
        logger.info("Pipeline stopped")

    async def _initialize_components(self) -> None:
        """Initialize all pipeline components."""
        settings = self._settings

        # Initialize Redis
        logger.debug("Initializing Redis connection...")
        self._redis = Redis.from_url(settings.redis.url)

        # Initialize Database Manager
        logger.debug("Initializing database manager...")
        self._db_manager = DatabaseManager(
            settings.database.url,
            pool_size=settings.database.pool_size,
        )
        session_factory = self._db_manager.get_async_session

        # Trust engine and fraud alerts
        self._trust_engine = TrustScoreEngine(
            session_factory,
            notifier=RedisTrustNotifier(self._redis, channel=settings.redis.trust_channel),
        )
        self._alert_manager = FraudAlertManager(
            session_factory,
            on_alert_raised=self._on_alert_raised,
        )

        # Mileage validator
        logger.debug("Initializing mileage validator...")
        self._validator = MileageValidator(
            session_factory,
            self._trust_engine,
            self._alert_manager,
            thresholds=ValidationThresholds(
                rollback_tolerance=settings.validation.rollback_tolerance,
                suspicious_threshold=settings.validation.suspicious_threshold,
                rollback_penalty=settings.validation.rollback_penalty,
            ),
            cas_retries=settings.validation.cas_retries,
        )

        # Anchor client
        if self._dry_run:
            logger.info("Dry run: daily digests are stored but not anchored")
        else:
            private_key = settings.polygon.anchor_private_key
            if private_key is None:
                raise ValueError("POLYGON_ANCHOR_PRIVATE_KEY is required unless DRY_RUN=true")
            logger.debug("Initializing Polygon anchor client...")
            self._anchor_client = PolygonAnchorClient(
                settings.polygon.rpc_url,
                private_key=private_key.get_secret_value(),
                chain_id=settings.polygon.chain_id,
                receipt_timeout_seconds=settings.polygon.receipt_timeout_seconds,
            )

        # Consolidation
        consolidation = settings.consolidation
        self._consolidation_job = DailyConsolidationJob(
            session_factory,
            self._anchor_client,
            max_concurrency=consolidation.max_concurrency,
            anchor_timeout_seconds=consolidation.anchor_timeout_seconds,
            vehicle_timeout_seconds=consolidation.vehicle_timeout_seconds,
            max_anchor_attempts=consolidation.max_anchor_attempts,
            sweep_limit=consolidation.sweep_limit,
        )
        if self._enable_scheduler:
            self._scheduler = ConsolidationScheduler(
                self._consolidation_job,
                run_hour=consolidation.run_hour,
                run_minute=consolidation.run_minute,
            )

        # Ingestion gateway
        if consolidation.eod_hint_enabled:
            self._eod_hint = EndOfDayHint(
                self._consolidation_job.consolidate_day,
                redis=self._redis,
                evening_hour=consolidation.eod_evening_hour,
                morning_hour=consolidation.eod_morning_hour,
                dedup_ttl_seconds=consolidation.eod_dedup_ttl_seconds,
            )
        self._gateway = IngestionGateway(
            self._validator,
            session_factory,
            eod_hint=self._eod_hint,
        )

    async def _start_background_services(self) -> None:
        """Start background services."""
        if self._scheduler:
            logger.debug("Starting consolidation scheduler...")
            await self._scheduler.start()

    async def _stop_background_services(self) -> None:
        """Stop background services."""
        if self._scheduler:
            logger.debug("Stopping consolidation scheduler...")
            await self._scheduler.stop()

        if self._eod_hint:
            await self._eod_hint.drain()

    async def _cleanup(self) -> None:
        """Clean up resources."""
        # Close database connections
        if self._db_manager:
            await self._db_manager.dispose_async()
            self._db_manager = None

        # Close Redis connection
        if self._redis:
            await self._redis.aclose()
            self._redis = None

        logger.debug("Resources cleaned up")

    async def ingest(self, payload: Any) -> IngestResponse:
        """Process a single device message.

        Args:
            payload: Decoded JSON message from a device.

        Returns:
            The gateway response (status, HTTP status code and body).

        Raises:
            RuntimeError: If the pipeline is not running.
        """
        if not self.is_running or self._gateway is None:
            raise RuntimeError("Pipeline is not running")

        self._stats.readings_processed += 1
        self._stats.last_reading_time = datetime.now(UTC)

        response = await self._gateway.handle(payload)
        if response.status is IngestStatus.ACCEPTED:
            self._stats.readings_accepted += 1
        elif response.status is IngestStatus.FLAGGED:
            self._stats.readings_flagged += 1
        elif response.status is IngestStatus.REJECTED:
            self._stats.readings_rejected += 1
        elif response.status is IngestStatus.RETRY:
            self._stats.readings_retried += 1
        else:
            self._stats.errors += 1
            self._stats.last_error = str(response.body.get("message"))
        return response

    async def consolidate(
        self,
        batch_date: date,
        *,
        vehicle_id: str | None = None,
        force: bool = False,
    ) -> ConsolidationRunStats | ConsolidationResult:
        """Run consolidation on demand for one vehicle or all vehicles."""
        job = self.consolidation_job
        if vehicle_id is not None:
            return await job.consolidate_day(vehicle_id, batch_date, force=force)
        if self._scheduler is not None:
            return await self._scheduler.trigger_now(batch_date)
        return await job.run(batch_date)

    async def _on_alert_raised(self, alert: FraudAlertDTO) -> None:
        self._stats.alerts_raised += 1
        logger.warning(
            "ALERT [%s] %s vehicle=%s: %s",
            alert.severity.upper(),
            alert.alert_type,
            alert.vehicle_id,
            alert.description,
        )

    def get_status(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "dryRun": self._dry_run,
            "startedAt": self._stats.started_at.isoformat() if self._stats.started_at else None,
            "readingsProcessed": self._stats.readings_processed,
            "readingsFlagged": self._stats.readings_flagged,
            "alertsRaised": self._stats.alerts_raised,
            "errors": self._stats.errors,
            "scheduler": self._scheduler.get_status() if self._scheduler else None,
        }

    async def run(self) -> None:
        """Run the pipeline until stopped.

        This is a convenience method that starts the pipeline and waits
        until stop() is called or the process is interrupted.

        Example:
            ```python
            pipeline = Pipeline()
            try:
                await pipeline.run()
            except KeyboardInterrupt:
                pass
            ```
        """
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> Pipeline:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
