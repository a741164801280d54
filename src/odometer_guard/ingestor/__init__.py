"""Ingestion layer - device message normalization and routing."""

from odometer_guard.ingestor.gateway import EndOfDayHint, IngestionGateway
from odometer_guard.ingestor.models import IngestResponse, IngestStatus, ReadingPayload

__all__ = [
    "EndOfDayHint",
    "IngestResponse",
    "IngestStatus",
    "IngestionGateway",
    "ReadingPayload",
]
