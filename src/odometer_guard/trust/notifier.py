"""Outbound notification hook for trust score changes."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from odometer_guard.storage.repos import TrustEventDTO

logger = logging.getLogger(__name__)

DEFAULT_TRUST_CHANNEL = "odometer:trust"


class TrustNotifier(Protocol):
    """Receives every applied trust score change after it is committed."""

    async def trust_score_changed(self, event: TrustEventDTO) -> None: ...


def event_to_dict(event: TrustEventDTO) -> dict[str, object]:
    """Serialize a trust event for publishing."""
    return {
        "type": "trust_score_changed",
        "vehicle_id": event.vehicle_id,
        "change": event.change,
        "previous_score": event.previous_score,
        "new_score": event.new_score,
        "reason": event.reason,
        "source": event.source,
        "telemetry_id": event.telemetry_id,
        "fraud_alert_id": event.fraud_alert_id,
        "created_at": event.created_at.isoformat() if event.created_at else None,
    }


class RedisTrustNotifier:
    """Publishes trust score changes on a Redis pub/sub channel.

    Delivery is best effort: a Redis failure is logged and swallowed so that
    an already committed score change is never reported as failed.
    """

    def __init__(self, redis: Redis, *, channel: str = DEFAULT_TRUST_CHANNEL) -> None:
        self._redis = redis
        self._channel = channel

    async def trust_score_changed(self, event: TrustEventDTO) -> None:
        try:
            await self._redis.publish(self._channel, json.dumps(event_to_dict(event)))
        except Exception as e:
            logger.warning(
                "Trust notification failed (vehicle=%s, channel=%s): %s",
                event.vehicle_id,
                self._channel,
                e,
            )
