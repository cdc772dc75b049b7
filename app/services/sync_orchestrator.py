"""
app/services/sync_orchestrator.py

Sequences the three sync stages, owns run status, and builds reports.
"""

from __future__ import annotations

import logging
import os
import socket
import threading
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Protocol

from fastapi import BackgroundTasks

from app.config import (
    SyncSettings,
    get_catalog_api_settings,
    get_external_http_settings,
    get_sync_settings,
)
from app.connectors.base import ApiError
from app.connectors.catalog_client import CatalogApiClient
from app.domain.sync_run import (
    CaseBatchResult,
    StageProgress,
    StopReason,
    SyncRun,
    SyncRunStatus,
    SyncStage,
)
from app.repositories.catalog_repository import CatalogRepository
from app.repositories.sync_state_repository import SyncStateRepository
from app.services.case_processor_service import CaseProcessorService, sample_rss_mb
from app.services.manifest_builder_service import ManifestBuilderService
from app.services.orphan_cleanup_service import OrphanCleanupService
from app.services.procedure_sync_service import ProcedureSyncService
from app.services.sync_errors import StageFatalError, SyncAlreadyRunningError, SyncLockLostError
from db.repositories.errors import StoreError
from db.repositories.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

OUTCOME_COMPLETED = "completed"
OUTCOME_COMPLETED_WITH_WARNINGS = "completed_with_warnings"
OUTCOME_FAILED = "failed"

# Share of the overall percentage owned by each stage: (start, width).
_STAGE_PERCENT_SPAN: dict[SyncStage, tuple[float, float]] = {
    SyncStage.IDLE: (0.0, 0.0),
    SyncStage.PROCEDURES: (0.0, 10.0),
    SyncStage.MANIFEST: (10.0, 20.0),
    SyncStage.CASES: (30.0, 70.0),
    SyncStage.DONE: (100.0, 0.0),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncTaskExecutor(Protocol):
    def submit(self, task: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        ...


class FastAPIBackgroundTaskExecutor:
    def __init__(self, background_tasks: BackgroundTasks) -> None:
        self._background_tasks = background_tasks

    def submit(self, task: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        self._background_tasks.add_task(task, *args, **kwargs)


class SyncOrchestrator:
    """
    Drives procedure sync, manifest build, and case processing for one
    catalog, persisting enough state after every step to resume.

    Only this class writes ``SyncRun.status``.
    """

    def __init__(
        self,
        *,
        client: CatalogApiClient,
        store: KeyValueStore,
        settings: SyncSettings,
        clock: Callable[[], float] = time.monotonic,
        memory_sampler: Callable[[], float] = sample_rss_mb,
        now: Callable[[], datetime] = _utcnow,
        owner: str | None = None,
    ) -> None:
        self._client = client
        self._settings = settings
        self._now = now
        self._owner = owner or f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self._local_lock = threading.Lock()

        self._catalog = CatalogRepository(store)
        self._state = SyncStateRepository(store)
        self._procedure_sync = ProcedureSyncService(client=client, repository=self._catalog)
        self._manifest_builder = ManifestBuilderService(
            client=client,
            catalog_repository=self._catalog,
            state_repository=self._state,
            max_pages=settings.max_listing_pages,
        )
        self._case_processor = CaseProcessorService(
            client=client,
            catalog_repository=self._catalog,
            state_repository=self._state,
            batch_size=settings.batch_size,
            time_limit_seconds=settings.time_limit_seconds,
            memory_limit_mb=settings.memory_limit_mb,
            clock=clock,
            memory_sampler=memory_sampler,
        )
        self._orphan_cleanup = OrphanCleanupService(repository=self._catalog)

    @property
    def client(self) -> CatalogApiClient:
        return self._client

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def run_full_sync(self, sync_type: str = "manual") -> SyncRun:
        """
        Start a new run and drive it to a terminal state or a stop-requested pause.
        """

        with self._running_lock():
            self._supersede_active_run()
            self._state.clear_stop()

            run = SyncRun(run_id=uuid.uuid4().hex, sync_type=sync_type, started_at=self._now())
            run.transition(SyncRunStatus.RUNNING)
            run.stage = SyncStage.PROCEDURES
            self._state.save_run(run)
            self._state.set_active_run_id(run.run_id)
            logger.info("Catalog sync started run_id=%s sync_type=%s", run.run_id, sync_type)
            self._register_upstream(run)

            try:
                self._run_procedure_stage(run)
                self._run_manifest_stage(run)
                while True:
                    result = self._run_case_stage(run)
                    if not result.needs_resume:
                        break
                    if result.stop_reason is StopReason.STOP_REQUESTED:
                        self._pause(run)
                        return run
                self._complete(run)
            except SyncLockLostError as exc:
                return self._abandon(run, exc)
            except StageFatalError as exc:
                self._fail(run, exc)
            except Exception as exc:
                logger.exception("Unexpected catalog sync failure run_id=%s", run.run_id)
                self._fail(run, StageFatalError(run.stage.value, str(exc)))
                raise
            return run

    def resume(self, *, force: bool = False) -> SyncRun | None:
        """
        Run one invocation of the active run's current stage.

        Returns ``None`` when nothing is in progress. A pending stop request
        blocks resumption unless ``force`` is set, which clears it.
        """

        with self._running_lock():
            if self._state.is_stop_requested():
                if not force:
                    logger.info("Catalog resume skipped; stop requested")
                    return None
                self._state.clear_stop()

            run_id = self._state.get_active_run_id()
            if run_id is None:
                logger.debug("Catalog resume found no active run")
                return None
            run = self._state.get_run(run_id)
            if run is None or run.status.is_terminal:
                self._state.clear_active_run_id()
                return None

            run.transition(SyncRunStatus.RUNNING)
            self._state.save_run(run)
            logger.info("Catalog sync resumed run_id=%s stage=%s", run.run_id, run.stage.value)

            try:
                if run.stage in (SyncStage.IDLE, SyncStage.PROCEDURES):
                    run.stage = SyncStage.PROCEDURES
                    self._run_procedure_stage(run)
                    self._pause(run)
                elif run.stage is SyncStage.MANIFEST:
                    self._run_manifest_stage(run)
                    self._pause(run)
                elif run.stage is SyncStage.CASES:
                    result = self._run_case_stage(run)
                    if result.needs_resume:
                        self._pause(run)
                    else:
                        self._complete(run)
                else:
                    self._complete(run)
            except SyncLockLostError as exc:
                return self._abandon(run, exc)
            except StageFatalError as exc:
                self._fail(run, exc)
            except Exception as exc:
                logger.exception("Unexpected catalog resume failure run_id=%s", run.run_id)
                self._fail(run, StageFatalError(run.stage.value, str(exc)))
                raise
            return run

    def request_stop(self) -> str | None:
        """
        Ask the running case stage to pause at its next batch boundary.
        """

        self._state.request_stop()
        run_id = self._state.get_active_run_id()
        logger.info("Catalog sync stop requested active_run_id=%s", run_id)
        return run_id

    def is_running(self) -> bool:
        return self._state.lock_holder() is not None

    def active_run_id(self) -> str | None:
        return self._state.get_active_run_id()

    def history(self) -> list[dict[str, Any]]:
        return self._state.list_history()

    def get_run_status(self, run_id: str) -> dict[str, Any] | None:
        run = self._state.get_run(run_id)
        if run is None:
            return None
        progress = self._state.get_progress(run_id)
        return {
            "run_id": run.run_id,
            "sync_type": run.sync_type,
            "status": run.status.value,
            "stage": run.stage.value,
            "overall_percentage": self._overall_percentage(run, progress),
            "counts": run.counts.as_dict(),
            "current_item": progress.message if progress and progress.message else None,
            "warnings": list(run.warnings),
            "error": run.error,
            "started_at": run.started_at.isoformat() if run.started_at else None,
            "completed_at": run.completed_at.isoformat() if run.completed_at else None,
        }

    def build_report(self, run_id: str) -> dict[str, Any] | None:
        run = self._state.get_run(run_id)
        if run is None:
            return None

        end = run.completed_at or self._now()
        duration = (end - run.started_at).total_seconds() if run.started_at else 0.0
        return {
            "run_id": run.run_id,
            "sync_type": run.sync_type,
            "status": run.status.value,
            "outcome": self._outcome(run),
            "procedures": {
                "created": int(run.procedure_counts.get("created", 0)),
                "updated": int(run.procedure_counts.get("updated", 0)),
            },
            "cases": {
                "created": run.counts.created,
                "updated": run.counts.updated,
                "unchanged": run.counts.unchanged,
                "failed": run.counts.failed,
                "attempted": run.counts.attempted,
            },
            "duplicates": {
                "unique": run.duplicate_unique_ids,
                "occurrences": run.counts.skipped_duplicates,
            },
            "orphans_removed": dict(run.orphans_removed),
            "warnings": list(run.warnings),
            "error": run.error,
            "duration_seconds": round(max(0.0, duration), 3),
        }

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _run_procedure_stage(self, run: SyncRun) -> None:
        self._hold_lock()
        self._save_progress(run, current=0, total=1, message="Fetching procedure taxonomy")
        result = self._procedure_sync.sync_procedures()
        run.procedure_counts = {"created": result.created, "updated": result.updated}
        self._state.save_upstream_procedure_ids(run.run_id, list(result.upstream_ids))
        self._save_progress(
            run,
            current=1,
            total=1,
            message=f"Synced {result.procedure_count} procedures",
        )
        run.stage = SyncStage.MANIFEST
        self._state.save_run(run)

    def _run_manifest_stage(self, run: SyncRun) -> None:
        self._hold_lock()

        def _on_progress(current: int, total: int, message: str) -> None:
            self._hold_lock()
            self._save_progress(run, current=current, total=total, message=message)

        build = self._manifest_builder.build_manifest(
            run.run_id,
            procedure_ids=self._state.get_upstream_procedure_ids(run.run_id),
            on_progress=_on_progress,
        )
        totals = build.manifest.totals()
        run.warnings.extend(build.warnings)
        run.incomplete_procedures = build.incomplete_procedures
        run.manifest_size = totals.case_count
        run.duplicate_unique_ids = totals.duplicate_unique_ids
        run.counts.skipped_duplicates = totals.duplicate_occurrences
        run.stage = SyncStage.CASES
        self._state.delete_checkpoint(run.run_id, SyncStage.CASES.value)
        self._state.save_run(run)

    def _run_case_stage(self, run: SyncRun) -> CaseBatchResult:
        manifest = self._state.get_manifest(run.run_id)
        if manifest is None:
            raise StageFatalError(SyncStage.CASES.value, f"manifest for run {run.run_id} is missing.")
        result = self._case_processor.process(
            manifest,
            should_stop=self._state.is_stop_requested,
            heartbeat=self._hold_lock,
        )
        run.counts = result.counts
        self._state.save_run(run)
        return result

    # ------------------------------------------------------------------
    # Run transitions
    # ------------------------------------------------------------------

    def _pause(self, run: SyncRun) -> None:
        run.transition(SyncRunStatus.PAUSED)
        self._state.save_run(run)
        logger.info("Catalog sync paused run_id=%s stage=%s", run.run_id, run.stage.value)

    def _complete(self, run: SyncRun) -> None:
        self._hold_lock()
        if self._settings.delete_orphans:
            self._cleanup_orphans(run)

        run.stage = SyncStage.DONE
        run.completed_at = self._now()
        run.transition(SyncRunStatus.COMPLETED)
        self._state.save_run(run)
        self._save_progress(run, current=run.manifest_size, total=run.manifest_size, message="Sync completed")
        self._discard_run_state(run.run_id)
        self._record_history(run)
        logger.info(
            "Catalog sync completed run_id=%s outcome=%s created=%s updated=%s failed=%s",
            run.run_id,
            self._outcome(run),
            run.counts.created,
            run.counts.updated,
            run.counts.failed,
        )
        self._report_upstream(run, "PARTIAL" if run.counts.failed else "SUCCESS")

    def _fail(self, run: SyncRun, exc: StageFatalError) -> None:
        run.error = exc.message
        run.failed_stage = run.stage
        run.completed_at = self._now()
        run.transition(SyncRunStatus.FAILED)
        try:
            self._state.save_run(run)
            self._discard_run_state(run.run_id)
            self._record_history(run)
        except StoreError:
            logger.exception("Failed to persist failed run run_id=%s", run.run_id)
        logger.error("Catalog sync failed run_id=%s stage=%s error=%s", run.run_id, exc.stage, exc.message)
        self._report_upstream(run, "FAILED")

    def _abandon(self, run: SyncRun, exc: SyncLockLostError) -> SyncRun:
        # Another worker owns the run now; its persisted state wins.
        logger.warning(
            "Catalog sync abandoned run_id=%s stage=%s holder=%s",
            run.run_id,
            run.stage.value,
            exc.holder,
        )
        return self._state.get_run(run.run_id) or run

    def _supersede_active_run(self) -> None:
        run_id = self._state.get_active_run_id()
        if run_id is None:
            return
        previous = self._state.get_run(run_id)
        if previous is not None and not previous.status.is_terminal:
            previous.error = "superseded by a new full sync"
            previous.failed_stage = previous.stage
            previous.completed_at = self._now()
            previous.transition(SyncRunStatus.FAILED)
            self._state.save_run(previous)
            self._record_history(previous)
            logger.warning("Superseded unfinished run run_id=%s stage=%s", run_id, previous.stage.value)
        self._discard_run_state(run_id)

    def _cleanup_orphans(self, run: SyncRun) -> None:
        upstream_procedures = self._state.get_upstream_procedure_ids(run.run_id) or []
        manifest = self._state.get_manifest(run.run_id)
        case_ids = manifest.case_ids if manifest is not None else []
        include_cases = not run.incomplete_procedures
        if not include_cases:
            run.add_warning(
                "Orphan case cleanup skipped; incomplete listings for procedures "
                + ", ".join(run.incomplete_procedures)
            )
        try:
            run.orphans_removed = self._orphan_cleanup.cleanup(
                upstream_procedure_ids=upstream_procedures,
                upstream_case_ids=case_ids,
                include_cases=include_cases,
            )
        except StoreError as exc:
            logger.warning("Orphan cleanup failed run_id=%s error=%s", run.run_id, exc)
            run.add_warning(f"Orphan cleanup failed: {exc}")

    def _discard_run_state(self, run_id: str) -> None:
        self._state.clear_active_run_id()
        self._state.delete_checkpoint(run_id, SyncStage.CASES.value)
        self._state.delete_manifest(run_id)
        self._state.delete_upstream_procedure_ids(run_id)

    def _record_history(self, run: SyncRun) -> None:
        self._state.append_history(
            {
                "run_id": run.run_id,
                "sync_type": run.sync_type,
                "status": run.status.value,
                "outcome": self._outcome(run),
                "started_at": run.started_at.isoformat() if run.started_at else None,
                "completed_at": run.completed_at.isoformat() if run.completed_at else None,
                "procedures": dict(run.procedure_counts),
                "counts": run.counts.as_dict(),
                "warnings": len(run.warnings),
                "error": run.error,
            },
            limit=self._settings.history_size,
        )

    def _save_progress(self, run: SyncRun, *, current: int, total: int, message: str) -> None:
        self._state.save_progress(
            StageProgress(
                run_id=run.run_id,
                stage=run.stage,
                current=current,
                total=total,
                message=message,
                updated_at=self._now().isoformat(),
            )
        )

    # ------------------------------------------------------------------
    # Upstream job reporting
    # ------------------------------------------------------------------

    def _register_upstream(self, run: SyncRun) -> None:
        if not self._settings.report_upstream:
            return
        try:
            job = self._client.register_sync(run.sync_type)
        except ApiError as exc:
            logger.warning("Upstream sync registration failed run_id=%s error=%s", run.run_id, exc)
            return
        job_id = job.get("id")
        run.upstream_job_id = str(job_id) if job_id is not None else None
        self._state.save_run(run)

    def _report_upstream(self, run: SyncRun, status: str) -> None:
        if not self._settings.report_upstream or run.upstream_job_id is None:
            return
        synced = run.counts.created + run.counts.updated + run.counts.unchanged
        message = run.error or f"Synced {synced} cases ({run.counts.failed} failed)"
        try:
            self._client.report_sync(
                status,
                cases_synced=synced,
                message=message,
                error_log="\n".join(run.warnings[:50]),
            )
        except ApiError as exc:
            logger.warning("Upstream sync report failed run_id=%s status=%s error=%s", run.run_id, status, exc)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _hold_lock(self) -> None:
        if not self._state.refresh_lock(self._owner, self._settings.lock_ttl_seconds):
            raise SyncLockLostError(self._owner, self._state.lock_holder())

    @contextmanager
    def _running_lock(self) -> Iterator[None]:
        if not self._local_lock.acquire(blocking=False):
            raise SyncAlreadyRunningError(self._owner)
        try:
            if not self._state.acquire_lock(self._owner, self._settings.lock_ttl_seconds):
                raise SyncAlreadyRunningError(self._state.lock_holder())
            try:
                yield
            finally:
                self._state.release_lock(self._owner)
        finally:
            self._local_lock.release()

    @staticmethod
    def _outcome(run: SyncRun) -> str | None:
        if run.status is SyncRunStatus.FAILED:
            return OUTCOME_FAILED
        if run.status is not SyncRunStatus.COMPLETED:
            return None
        if run.warnings or run.counts.failed:
            return OUTCOME_COMPLETED_WITH_WARNINGS
        return OUTCOME_COMPLETED

    @staticmethod
    def _overall_percentage(run: SyncRun, progress: StageProgress | None) -> int:
        if run.status is SyncRunStatus.COMPLETED:
            return 100
        stage = run.stage
        fraction = 0.0
        if progress is not None and progress.stage is stage:
            fraction = progress.fraction
        elif stage is SyncStage.CASES and run.manifest_size:
            fraction = min(1.0, run.counts.attempted / run.manifest_size)
        start, width = _STAGE_PERCENT_SPAN[stage]
        return int(round(start + width * fraction))


@lru_cache(maxsize=1)
def get_sync_orchestrator() -> SyncOrchestrator:
    """
    Build and cache the orchestrator wired to the database-backed store.
    """

    from db.session import get_kv_store

    store = get_kv_store()
    client = CatalogApiClient(
        settings=get_catalog_api_settings(),
        http_settings=get_external_http_settings(),
        store=store,
    )
    return SyncOrchestrator(client=client, store=store, settings=get_sync_settings())


def dispatch_full_sync(
    orchestrator: SyncOrchestrator,
    executor: SyncTaskExecutor,
    sync_type: str = "manual",
) -> None:
    executor.submit(_run_full_sync_task, orchestrator, sync_type)


def dispatch_resume(orchestrator: SyncOrchestrator, executor: SyncTaskExecutor, *, force: bool = True) -> None:
    executor.submit(_resume_task, orchestrator, force)


def _run_full_sync_task(orchestrator: SyncOrchestrator, sync_type: str) -> None:
    try:
        orchestrator.run_full_sync(sync_type)
    except SyncAlreadyRunningError as exc:
        logger.warning("Background full sync skipped error=%s", exc)
    except Exception:
        logger.exception("Background full sync crashed sync_type=%s", sync_type)


def _resume_task(orchestrator: SyncOrchestrator, force: bool) -> None:
    try:
        orchestrator.resume(force=force)
    except SyncAlreadyRunningError as exc:
        logger.warning("Background resume skipped error=%s", exc)
    except Exception:
        logger.exception("Background resume crashed")
