"""Ingestion gateway for device readings.

Normalizes a raw device message, resolves the vehicle, hands the reading to
the validator and maps the outcome to a transport-neutral response:

    VALID                          -> accepted (200)
    SUSPICIOUS / ROLLBACK_DETECTED -> flagged  (422)
    malformed input                -> rejected (400)
    RetryExhaustedError            -> retry    (409)
    infrastructure failure         -> error    (500)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, date, datetime, timedelta
from typing import TYPE_CHECKING, Any

from odometer_guard.exceptions import InvalidInputError, RetryExhaustedError
from odometer_guard.ingestor.models import IngestResponse, IngestStatus, ReadingPayload
from odometer_guard.storage.repos import VehicleStateRepository
from odometer_guard.validator.models import ValidationOutcome, ValidationStatus

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from odometer_guard.trust.engine import SessionFactory
    from odometer_guard.validator.mileage import MileageValidator

logger = logging.getLogger(__name__)

EOD_HINT_KEY_PREFIX = "odometer:eod:"
DEFAULT_EVENING_HOUR = 22
DEFAULT_MORNING_HOUR = 6
DEFAULT_DEDUP_TTL_SECONDS = 6 * 60 * 60

ConsolidationTrigger = Callable[[str, date], Awaitable[Any]]


class EndOfDayHint:
    """Best-effort trigger for consolidating a day after its last trip.

    A reading taken late in the evening (or early the next morning) is
    probably the last of its day, so that day is consolidated right away
    instead of waiting for the nightly run. The scheduled run still covers
    every vehicle; this only makes anchoring earlier.

    Triggers are deduplicated per vehicle/day with a Redis ``SET NX EX``
    key and run as background tasks whose failures are only logged.
    """

    def __init__(
        self,
        trigger: ConsolidationTrigger,
        *,
        redis: Redis | None = None,
        evening_hour: int = DEFAULT_EVENING_HOUR,
        morning_hour: int = DEFAULT_MORNING_HOUR,
        dedup_ttl_seconds: int = DEFAULT_DEDUP_TTL_SECONDS,
        key_prefix: str = EOD_HINT_KEY_PREFIX,
    ) -> None:
        self._trigger = trigger
        self._redis = redis
        self._evening_hour = evening_hour
        self._morning_hour = morning_hour
        self._dedup_ttl = dedup_ttl_seconds
        self._key_prefix = key_prefix
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    def consolidation_date(self, received_at: datetime) -> date | None:
        """Day to consolidate for a reading, or None outside the end-of-day window."""
        moment = received_at.astimezone(UTC)
        if moment.hour >= self._evening_hour:
            return moment.date()
        if moment.hour <= self._morning_hour:
            return moment.date() - timedelta(days=1)
        return None

    async def maybe_trigger(self, vehicle_id: str, received_at: datetime) -> bool:
        """Schedule consolidation if the reading closes a day.

        Returns:
            True if a background consolidation was scheduled.
        """
        batch_date = self.consolidation_date(received_at)
        if batch_date is None:
            return False

        if self._redis is not None:
            key = f"{self._key_prefix}{vehicle_id}:{batch_date.isoformat()}"
            try:
                was_set = await self._redis.set(
                    key,
                    datetime.now(UTC).isoformat(),
                    nx=True,
                    ex=self._dedup_ttl,
                )
            except Exception as e:
                logger.warning("End-of-day dedup check failed for %s: %s", vehicle_id, e)
                return False
            if not was_set:
                return False

        logger.info("End-of-day consolidation hint for %s on %s", vehicle_id, batch_date)
        task = asyncio.create_task(self._run(vehicle_id, batch_date))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _run(self, vehicle_id: str, batch_date: date) -> None:
        try:
            result = await self._trigger(vehicle_id, batch_date)
            logger.info("End-of-day consolidation for %s/%s: %s", vehicle_id, batch_date, result)
        except Exception as e:
            logger.error("End-of-day consolidation failed for %s/%s: %s", vehicle_id, batch_date, e)

    async def drain(self, timeout: float = 10.0) -> None:
        """Wait for scheduled consolidations, cancelling what is left after ``timeout``."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


class IngestionGateway:
    """Entry point for device messages.

    Example:
        ```python
        gateway = IngestionGateway(validator, db.get_async_session)
        response = await gateway.handle(
            {"vehicleId": "veh-1", "deviceId": "dev-42", "mileage": 65081}
        )
        print(response.http_status, response.body)
        ```
    """

    def __init__(
        self,
        validator: MileageValidator,
        session_factory: SessionFactory,
        *,
        eod_hint: EndOfDayHint | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the gateway.

        Args:
            validator: Mileage validator.
            session_factory: Unit-of-work factory, used for VIN lookups.
            eod_hint: Optional end-of-day consolidation hint.
            clock: Returns the current UTC time; used when a reading has no time.
        """
        self._validator = validator
        self._session_factory = session_factory
        self._eod_hint = eod_hint
        self._clock = clock or (lambda: datetime.now(UTC))

    async def handle(self, payload: Any) -> IngestResponse:
        """Validate one device message and map the result to a response."""
        try:
            reading = ReadingPayload.from_dict(payload, now=self._clock())
            vehicle_id = reading.vehicle_id or await self._resolve_vin(reading.vin)
            outcome = await self._validator.validate(
                vehicle_id,
                reading.reported_mileage,
                reading.received_at,
                device_id=reading.device_id,
            )
        except InvalidInputError as e:
            logger.info("Rejected reading: %s", e)
            return IngestResponse(
                status=IngestStatus.REJECTED,
                http_status=400,
                body={"status": IngestStatus.REJECTED.value, "message": str(e), "field": e.field},
            )
        except RetryExhaustedError as e:
            return IngestResponse(
                status=IngestStatus.RETRY,
                http_status=409,
                body={
                    "status": IngestStatus.RETRY.value,
                    "message": str(e),
                    "readingId": e.reading_id,
                },
            )
        except Exception as e:
            logger.error("Failed to process reading: %s", e)
            return IngestResponse(
                status=IngestStatus.ERROR,
                http_status=500,
                body={
                    "status": IngestStatus.ERROR.value,
                    "message": "Failed to process reading",
                },
            )

        await self._hint(vehicle_id, reading)
        return self._respond(outcome)

    async def _resolve_vin(self, vin: str | None) -> str:
        if vin is None:
            raise InvalidInputError("vehicleId or vin is required", field="vehicleId")
        async with self._session_factory() as session:
            state = await VehicleStateRepository(session).get_by_vin(vin)
        if state is None:
            raise InvalidInputError(f"Unknown VIN: {vin}", field="vin")
        return state.vehicle_id

    async def _hint(self, vehicle_id: str, reading: ReadingPayload) -> None:
        if self._eod_hint is None:
            return
        try:
            await self._eod_hint.maybe_trigger(vehicle_id, reading.received_at)
        except Exception as e:
            logger.warning("End-of-day hint failed for %s: %s", vehicle_id, e)

    def _respond(self, outcome: ValidationOutcome) -> IngestResponse:
        data = outcome.to_dict()
        if outcome.validation_status is ValidationStatus.VALID:
            return IngestResponse(
                status=IngestStatus.ACCEPTED,
                http_status=200,
                body={"status": IngestStatus.ACCEPTED.value, "data": data},
            )
        return IngestResponse(
            status=IngestStatus.FLAGGED,
            http_status=422,
            body={
                "status": IngestStatus.FLAGGED.value,
                "flagged": True,
                "reason": outcome.reason,
                "data": data,
            },
        )
