"""Daily consolidation - digests, anchoring and scheduling."""

from odometer_guard.consolidation.anchor import AnchorClient, AnchorReceipt, PolygonAnchorClient
from odometer_guard.consolidation.digest import DayDigest, compute_day_digest, verify_proof
from odometer_guard.consolidation.job import (
    ConsolidationResult,
    ConsolidationRunStats,
    ConsolidationStatus,
    DailyConsolidationJob,
)
from odometer_guard.consolidation.scheduler import ConsolidationScheduler, SchedulerState

__all__ = [
    "AnchorClient",
    "AnchorReceipt",
    "ConsolidationResult",
    "ConsolidationRunStats",
    "ConsolidationScheduler",
    "ConsolidationStatus",
    "DailyConsolidationJob",
    "DayDigest",
    "PolygonAnchorClient",
    "SchedulerState",
    "compute_day_digest",
    "verify_proof",
]
