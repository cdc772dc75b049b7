"""
app/services package marker.
"""

from app.services.case_processor_service import CaseProcessorService
from app.services.manifest_builder_service import ManifestBuilderService, ManifestBuildResult
from app.services.orphan_cleanup_service import OrphanCleanupService
from app.services.procedure_sync_service import ProcedureSyncService
from app.services.sync_errors import StageFatalError, SyncAlreadyRunningError
from app.services.sync_orchestrator import (
    FastAPIBackgroundTaskExecutor,
    SyncOrchestrator,
    get_sync_orchestrator,
)

__all__ = [
    "CaseProcessorService",
    "FastAPIBackgroundTaskExecutor",
    "ManifestBuildResult",
    "ManifestBuilderService",
    "OrphanCleanupService",
    "ProcedureSyncService",
    "StageFatalError",
    "SyncAlreadyRunningError",
    "SyncOrchestrator",
    "get_sync_orchestrator",
]
