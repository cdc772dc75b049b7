"""
Schemas for catalog sync trigger, status, and report endpoints.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class SyncAcceptedResponse(BaseModel):
    action: str
    status: str = "accepted"
    active_run_id: str | None = None


class SyncStopResponse(BaseModel):
    stop_requested: bool = True
    active_run_id: str | None = None


class RunCountsResponse(BaseModel):
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    skipped_duplicates: int = 0


class SyncRunStatusResponse(BaseModel):
    run_id: str
    sync_type: str
    status: str
    stage: str
    overall_percentage: int = Field(ge=0, le=100)
    counts: RunCountsResponse
    current_item: str | None = None
    warnings: list[str] = Field(default_factory=list)
    error: str | None = None
    started_at: str | None = None
    completed_at: str | None = None


class ProcedureReportCounts(BaseModel):
    created: int = 0
    updated: int = 0


class CaseReportCounts(BaseModel):
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    attempted: int = 0


class DuplicateReportCounts(BaseModel):
    unique: int = 0
    occurrences: int = 0


class SyncReportResponse(BaseModel):
    run_id: str
    sync_type: str
    status: str
    outcome: str | None = None
    procedures: ProcedureReportCounts
    cases: CaseReportCounts
    duplicates: DuplicateReportCounts
    orphans_removed: dict[str, int] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)
    error: str | None = None
    duration_seconds: float = 0.0


class SyncHistoryResponse(BaseModel):
    runs: list[dict[str, Any]] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: str
    sync_running: bool
    active_run_id: str | None = None
