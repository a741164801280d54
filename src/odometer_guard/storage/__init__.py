"""Storage layer - Database schemas and repositories."""

from odometer_guard.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from odometer_guard.storage.models import (
    Base,
    DailyBatchModel,
    FraudAlertModel,
    TelemetryReadingModel,
    TrustEventModel,
    VehicleStateModel,
)
from odometer_guard.storage.repos import (
    DailyBatchDTO,
    DailyBatchRepository,
    FraudAlertDTO,
    FraudAlertRepository,
    TelemetryReadingDTO,
    TelemetryReadingRepository,
    TrustEventDTO,
    TrustEventRepository,
    VehicleStateDTO,
    VehicleStateRepository,
)

__all__ = [
    "Base",
    "DailyBatchDTO",
    "DailyBatchModel",
    "DailyBatchRepository",
    "DatabaseManager",
    "FraudAlertDTO",
    "FraudAlertModel",
    "FraudAlertRepository",
    "TelemetryReadingDTO",
    "TelemetryReadingModel",
    "TelemetryReadingRepository",
    "TrustEventDTO",
    "TrustEventModel",
    "TrustEventRepository",
    "VehicleStateDTO",
    "VehicleStateModel",
    "VehicleStateRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
