"""
app/repositories/sync_state_repository.py

Persisted sync-engine state: runs, checkpoints, manifests, progress, the
cooperative stop flag, the running lock, and run history.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from app.domain.manifest import CaseManifest
from app.domain.sync_run import Checkpoint, StageProgress, SyncRun
from db.repositories.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

RUN_PREFIX = "sync_run:"
ACTIVE_RUN_KEY = "sync_active_run"
CHECKPOINT_PREFIX = "checkpoint:"
MANIFEST_PREFIX = "manifest:"
PROGRESS_PREFIX = "progress:"
UPSTREAM_IDS_PREFIX = "taxonomy_ids:"
STOP_FLAG_KEY = "sync_stop_requested"
LOCK_KEY = "sync_lock"
HISTORY_KEY = "sync_history"


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SyncStateRepository:
    """
    Repository for everything the orchestrator and stages persist between
    invocations.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    # Runs

    def save_run(self, run: SyncRun) -> None:
        self._store.set(f"{RUN_PREFIX}{run.run_id}", run.to_payload())

    def get_run(self, run_id: str) -> SyncRun | None:
        payload = self._store.get(f"{RUN_PREFIX}{run_id}")
        if payload is None:
            return None
        return SyncRun.from_payload(payload)

    def set_active_run_id(self, run_id: str) -> None:
        self._store.set(ACTIVE_RUN_KEY, run_id)

    def get_active_run_id(self) -> str | None:
        value = self._store.get(ACTIVE_RUN_KEY)
        return str(value) if value else None

    def clear_active_run_id(self) -> None:
        self._store.delete(ACTIVE_RUN_KEY)

    # Checkpoints

    def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        self._store.set(
            f"{CHECKPOINT_PREFIX}{checkpoint.run_id}:{checkpoint.stage.value}",
            checkpoint.to_payload(),
        )

    def get_checkpoint(self, run_id: str, stage: str) -> Checkpoint | None:
        payload = self._store.get(f"{CHECKPOINT_PREFIX}{run_id}:{stage}")
        if payload is None:
            return None
        return Checkpoint.from_payload(payload)

    def delete_checkpoint(self, run_id: str, stage: str) -> None:
        self._store.delete(f"{CHECKPOINT_PREFIX}{run_id}:{stage}")

    # Manifests

    def save_manifest(self, manifest: CaseManifest) -> None:
        self._store.set(f"{MANIFEST_PREFIX}{manifest.run_id}", manifest.to_payload())

    def get_manifest(self, run_id: str) -> CaseManifest | None:
        payload = self._store.get(f"{MANIFEST_PREFIX}{run_id}")
        if payload is None:
            return None
        return CaseManifest.from_payload(payload)

    def delete_manifest(self, run_id: str) -> None:
        self._store.delete(f"{MANIFEST_PREFIX}{run_id}")

    # Upstream procedure ids seen by the taxonomy stage

    def save_upstream_procedure_ids(self, run_id: str, ids: list[str]) -> None:
        self._store.set(f"{UPSTREAM_IDS_PREFIX}{run_id}", list(ids))

    def get_upstream_procedure_ids(self, run_id: str) -> list[str] | None:
        value = self._store.get(f"{UPSTREAM_IDS_PREFIX}{run_id}")
        return list(value) if value is not None else None

    def delete_upstream_procedure_ids(self, run_id: str) -> None:
        self._store.delete(f"{UPSTREAM_IDS_PREFIX}{run_id}")

    # Stage progress

    def save_progress(self, progress: StageProgress) -> None:
        payload = progress.to_payload()
        payload["updated_at"] = payload.get("updated_at") or _utcnow_iso()
        self._store.set(f"{PROGRESS_PREFIX}{progress.run_id}", payload)

    def get_progress(self, run_id: str) -> StageProgress | None:
        payload = self._store.get(f"{PROGRESS_PREFIX}{run_id}")
        if payload is None:
            return None
        return StageProgress.from_payload(payload)

    # Cooperative stop flag

    def request_stop(self) -> None:
        self._store.set(STOP_FLAG_KEY, {"requested_at": _utcnow_iso()})

    def is_stop_requested(self) -> bool:
        return self._store.get(STOP_FLAG_KEY) is not None

    def clear_stop(self) -> None:
        self._store.delete(STOP_FLAG_KEY)

    # Running lock

    def acquire_lock(self, owner: str, ttl_seconds: int) -> bool:
        acquired = self._store.set_if_absent(
            LOCK_KEY,
            {"owner": owner, "acquired_at": _utcnow_iso()},
            ttl_seconds=ttl_seconds,
        )
        if not acquired:
            logger.info("Sync lock busy holder=%s", self.lock_holder())
        return acquired

    def refresh_lock(self, owner: str, ttl_seconds: int) -> bool:
        """
        Extend the lock TTL. Returns ``False`` when ``owner`` no longer holds it.
        """

        current = self._store.get(LOCK_KEY)
        if not isinstance(current, dict) or current.get("owner") != owner:
            logger.warning(
                "Sync lock lost owner=%s holder=%s",
                owner,
                current.get("owner") if isinstance(current, dict) else None,
            )
            return False
        self._store.set(LOCK_KEY, {**current, "refreshed_at": _utcnow_iso()}, ttl_seconds=ttl_seconds)
        return True

    def release_lock(self, owner: str) -> None:
        current = self._store.get(LOCK_KEY)
        if isinstance(current, dict) and current.get("owner") != owner:
            logger.warning("Sync lock owned by another holder owner=%s holder=%s", owner, current.get("owner"))
            return
        self._store.delete(LOCK_KEY)

    def lock_holder(self) -> str | None:
        current = self._store.get(LOCK_KEY)
        if isinstance(current, dict):
            return current.get("owner")
        return None

    # History

    def append_history(self, summary: dict[str, Any], *, limit: int) -> None:
        history = self.list_history()
        history.insert(0, summary)
        self._store.set(HISTORY_KEY, history[: max(1, limit)])

    def list_history(self) -> list[dict[str, Any]]:
        value = self._store.get(HISTORY_KEY)
        return list(value) if isinstance(value, list) else []
