"""
app/schemas package marker.
"""

from app.schemas.sync import (
    HealthResponse,
    SyncAcceptedResponse,
    SyncHistoryResponse,
    SyncReportResponse,
    SyncRunStatusResponse,
    SyncStopResponse,
)

__all__ = [
    "HealthResponse",
    "SyncAcceptedResponse",
    "SyncHistoryResponse",
    "SyncReportResponse",
    "SyncRunStatusResponse",
    "SyncStopResponse",
]
