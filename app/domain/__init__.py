"""
app/domain package marker.
"""

from app.domain.catalog import Case, MediaRef, Procedure, UpsertOutcome, compute_content_hash
from app.domain.manifest import CaseManifest, ManifestEntry, ManifestTotals
from app.domain.sync_run import (
    CaseBatchResult,
    Checkpoint,
    InvalidRunTransitionError,
    ProcedureSyncResult,
    RunCounts,
    StageProgress,
    StopReason,
    SyncRun,
    SyncRunStatus,
    SyncStage,
)

__all__ = [
    "Case",
    "CaseBatchResult",
    "CaseManifest",
    "Checkpoint",
    "InvalidRunTransitionError",
    "ManifestEntry",
    "ManifestTotals",
    "MediaRef",
    "Procedure",
    "ProcedureSyncResult",
    "RunCounts",
    "StageProgress",
    "StopReason",
    "SyncRun",
    "SyncRunStatus",
    "SyncStage",
    "UpsertOutcome",
    "compute_content_hash",
]
