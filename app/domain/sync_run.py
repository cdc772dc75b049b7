"""
app/domain/sync_run.py

Sync run state machine, counters, checkpoints, and stage results.
"""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any


class SyncRunStatus(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncRunStatus.COMPLETED, SyncRunStatus.FAILED)


class SyncStage(str, enum.Enum):
    IDLE = "idle"
    PROCEDURES = "procedures"
    MANIFEST = "manifest"
    CASES = "cases"
    DONE = "done"


_ALLOWED_TRANSITIONS: dict[SyncRunStatus, frozenset[SyncRunStatus]] = {
    SyncRunStatus.IDLE: frozenset({SyncRunStatus.RUNNING, SyncRunStatus.FAILED}),
    SyncRunStatus.RUNNING: frozenset({SyncRunStatus.PAUSED, SyncRunStatus.COMPLETED, SyncRunStatus.FAILED}),
    SyncRunStatus.PAUSED: frozenset({SyncRunStatus.RUNNING, SyncRunStatus.FAILED}),
    SyncRunStatus.COMPLETED: frozenset(),
    SyncRunStatus.FAILED: frozenset(),
}


class InvalidRunTransitionError(RuntimeError):
    """Raised when a run status change would violate the state machine."""


class StopReason(str, enum.Enum):
    STOP_REQUESTED = "stop_requested"
    TIME_LIMIT = "time_limit"
    MEMORY_LIMIT = "memory_limit"


@dataclass
class RunCounts:
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    skipped_duplicates: int = 0

    @property
    def attempted(self) -> int:
        return self.created + self.updated + self.unchanged + self.failed

    def as_dict(self) -> dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> RunCounts:
        payload = payload or {}
        return cls(
            created=int(payload.get("created", 0)),
            updated=int(payload.get("updated", 0)),
            unchanged=int(payload.get("unchanged", 0)),
            failed=int(payload.get("failed", 0)),
            skipped_duplicates=int(payload.get("skipped_duplicates", 0)),
        )


@dataclass
class SyncRun:
    """
    One end-to-end synchronization attempt.

    ``counts`` tracks cases; ``procedure_counts`` tracks the taxonomy stage.
    """

    run_id: str
    sync_type: str = "manual"
    stage: SyncStage = SyncStage.IDLE
    status: SyncRunStatus = SyncRunStatus.IDLE
    started_at: datetime | None = None
    completed_at: datetime | None = None
    counts: RunCounts = field(default_factory=RunCounts)
    procedure_counts: dict[str, int] = field(default_factory=lambda: {"created": 0, "updated": 0})
    duplicate_unique_ids: int = 0
    manifest_size: int = 0
    warnings: list[str] = field(default_factory=list)
    error: str | None = None
    failed_stage: SyncStage | None = None
    upstream_job_id: str | None = None
    orphans_removed: dict[str, int] = field(default_factory=dict)
    incomplete_procedures: list[str] = field(default_factory=list)

    def transition(self, target: SyncRunStatus) -> None:
        if target == self.status:
            return
        if target not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidRunTransitionError(
                f"Run {self.run_id} cannot move from {self.status.value} to {target.value}."
            )
        self.status = target

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def to_payload(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "sync_type": self.sync_type,
            "stage": self.stage.value,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "counts": self.counts.as_dict(),
            "procedure_counts": dict(self.procedure_counts),
            "duplicate_unique_ids": self.duplicate_unique_ids,
            "manifest_size": self.manifest_size,
            "warnings": list(self.warnings),
            "error": self.error,
            "failed_stage": self.failed_stage.value if self.failed_stage else None,
            "upstream_job_id": self.upstream_job_id,
            "orphans_removed": dict(self.orphans_removed),
            "incomplete_procedures": list(self.incomplete_procedures),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> SyncRun:
        return cls(
            run_id=payload["run_id"],
            sync_type=payload.get("sync_type", "manual"),
            stage=SyncStage(payload.get("stage", SyncStage.IDLE.value)),
            status=SyncRunStatus(payload.get("status", SyncRunStatus.IDLE.value)),
            started_at=_parse_datetime(payload.get("started_at")),
            completed_at=_parse_datetime(payload.get("completed_at")),
            counts=RunCounts.from_dict(payload.get("counts")),
            procedure_counts=dict(payload.get("procedure_counts") or {"created": 0, "updated": 0}),
            duplicate_unique_ids=int(payload.get("duplicate_unique_ids", 0)),
            manifest_size=int(payload.get("manifest_size", 0)),
            warnings=list(payload.get("warnings") or []),
            error=payload.get("error"),
            failed_stage=SyncStage(payload["failed_stage"]) if payload.get("failed_stage") else None,
            upstream_job_id=payload.get("upstream_job_id"),
            orphans_removed=dict(payload.get("orphans_removed") or {}),
            incomplete_procedures=[str(value) for value in payload.get("incomplete_procedures") or []],
        )


@dataclass
class Checkpoint:
    """
    Persisted resume point for the case stage.
    """

    run_id: str
    stage: SyncStage
    cursor: int = 0
    counts: RunCounts = field(default_factory=RunCounts)
    elapsed_seconds: float = 0.0
    invocations: int = 0

    def to_payload(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "stage": self.stage.value,
            "cursor": self.cursor,
            "counts": self.counts.as_dict(),
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "invocations": self.invocations,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Checkpoint:
        return cls(
            run_id=payload["run_id"],
            stage=SyncStage(payload["stage"]),
            cursor=int(payload.get("cursor", 0)),
            counts=RunCounts.from_dict(payload.get("counts")),
            elapsed_seconds=float(payload.get("elapsed_seconds", 0.0)),
            invocations=int(payload.get("invocations", 0)),
        )


@dataclass(frozen=True)
class StageProgress:
    run_id: str
    stage: SyncStage
    current: int
    total: int
    message: str = ""
    updated_at: str | None = None

    @property
    def fraction(self) -> float:
        if self.total <= 0:
            return 0.0
        return min(1.0, self.current / self.total)

    @property
    def percentage(self) -> int:
        return round(self.fraction * 100)

    def to_payload(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "stage": self.stage.value,
            "current": self.current,
            "total": self.total,
            "percentage": self.percentage,
            "message": self.message,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> StageProgress:
        return cls(
            run_id=payload["run_id"],
            stage=SyncStage(payload["stage"]),
            current=int(payload.get("current", 0)),
            total=int(payload.get("total", 0)),
            message=payload.get("message", ""),
            updated_at=payload.get("updated_at"),
        )


@dataclass(frozen=True)
class ProcedureSyncResult:
    created: int
    updated: int
    procedure_count: int
    upstream_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class CaseBatchResult:
    """
    Outcome of one case-stage invocation.
    """

    needs_resume: bool
    cursor: int
    total: int
    counts: RunCounts
    stop_reason: StopReason | None = None
    processed_this_invocation: int = 0


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)
