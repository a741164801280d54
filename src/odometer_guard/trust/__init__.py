"""Trust score engine and notification hooks."""

from odometer_guard.trust.engine import (
    TrustEventDetails,
    TrustRecomputation,
    TrustScoreEngine,
    TrustSource,
)
from odometer_guard.trust.notifier import RedisTrustNotifier, TrustNotifier

__all__ = [
    "RedisTrustNotifier",
    "TrustEventDetails",
    "TrustNotifier",
    "TrustRecomputation",
    "TrustScoreEngine",
    "TrustSource",
]
