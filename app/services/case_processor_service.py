"""
app/services/case_processor_service.py

Stage 3: resumable batch consumer of the case manifest.

Each invocation picks up at the persisted cursor, processes whole batches,
and checkpoints after every batch. Soft limits (stop flag, wall clock, and
process memory) are checked at batch boundaries only, so a batch is never
half-applied from the checkpoint's point of view.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

import psutil

from app.connectors.base import ApiError
from app.connectors.catalog_client import CatalogApiClient
from app.domain.catalog import UpsertOutcome
from app.domain.manifest import CaseManifest, ManifestEntry
from app.domain.sync_run import CaseBatchResult, Checkpoint, RunCounts, StageProgress, StopReason, SyncStage
from app.mappers.catalog_mapper import CatalogMappingError, map_case
from app.repositories.catalog_repository import CatalogRepository
from app.repositories.sync_state_repository import SyncStateRepository
from db.repositories.errors import StoreError

logger = logging.getLogger(__name__)


def sample_rss_mb() -> float:
    """
    Resident set size of the current process in megabytes.
    """

    return psutil.Process().memory_info().rss / (1024 * 1024)


class CaseProcessorService:
    def __init__(
        self,
        *,
        client: CatalogApiClient,
        catalog_repository: CatalogRepository,
        state_repository: SyncStateRepository,
        batch_size: int = 50,
        time_limit_seconds: float = 240.0,
        memory_limit_mb: float = 384.0,
        clock: Callable[[], float] = time.monotonic,
        memory_sampler: Callable[[], float] = sample_rss_mb,
    ) -> None:
        self._client = client
        self._catalog = catalog_repository
        self._state = state_repository
        self._batch_size = max(1, batch_size)
        self._time_limit_seconds = time_limit_seconds
        self._memory_limit_mb = memory_limit_mb
        self._clock = clock
        self._memory_sampler = memory_sampler

    def process(
        self,
        manifest: CaseManifest,
        *,
        should_stop: Callable[[], bool] | None = None,
        heartbeat: Callable[[], None] | None = None,
    ) -> CaseBatchResult:
        """
        Run one invocation of the case stage for ``manifest.run_id``.

        At least one batch is processed per invocation so repeated resumes
        always make progress. ``heartbeat`` runs before the first batch and
        before every checkpoint write; whatever it raises aborts the
        invocation without touching the checkpoint.
        """

        run_id = manifest.run_id
        stage = SyncStage.CASES.value
        checkpoint = self._state.get_checkpoint(run_id, stage) or Checkpoint(
            run_id=run_id,
            stage=SyncStage.CASES,
            counts=RunCounts(skipped_duplicates=manifest.duplicate_occurrences),
        )
        checkpoint.invocations += 1
        total = len(manifest)
        started = self._clock()
        processed_now = 0

        logger.info(
            "Case stage invocation run_id=%s invocation=%s cursor=%s total=%s",
            run_id,
            checkpoint.invocations,
            checkpoint.cursor,
            total,
        )

        if heartbeat is not None:
            heartbeat()

        while checkpoint.cursor < total:
            batch = manifest.slice(checkpoint.cursor, checkpoint.cursor + self._batch_size)
            batch_started = self._clock()
            for entry in batch:
                self._process_entry(run_id, entry, checkpoint.counts)
            checkpoint.cursor += len(batch)
            processed_now += len(batch)
            checkpoint.elapsed_seconds += self._clock() - batch_started

            if heartbeat is not None:
                heartbeat()
            self._state.save_checkpoint(checkpoint)
            self._state.save_progress(
                StageProgress(
                    run_id=run_id,
                    stage=SyncStage.CASES,
                    current=checkpoint.cursor,
                    total=total,
                    message=f"Processed {checkpoint.cursor} of {total} cases",
                )
            )

            if checkpoint.cursor >= total:
                break

            reason = self._stop_reason(started, should_stop)
            if reason is not None:
                logger.info(
                    "Case stage pausing run_id=%s reason=%s cursor=%s total=%s",
                    run_id,
                    reason.value,
                    checkpoint.cursor,
                    total,
                )
                return CaseBatchResult(
                    needs_resume=True,
                    cursor=checkpoint.cursor,
                    total=total,
                    counts=checkpoint.counts,
                    stop_reason=reason,
                    processed_this_invocation=processed_now,
                )

        self._state.delete_checkpoint(run_id, stage)
        logger.info(
            "Case stage finished run_id=%s created=%s updated=%s unchanged=%s failed=%s",
            run_id,
            checkpoint.counts.created,
            checkpoint.counts.updated,
            checkpoint.counts.unchanged,
            checkpoint.counts.failed,
        )
        return CaseBatchResult(
            needs_resume=False,
            cursor=total,
            total=total,
            counts=checkpoint.counts,
            processed_this_invocation=processed_now,
        )

    def _process_entry(self, run_id: str, entry: ManifestEntry, counts: RunCounts) -> None:
        try:
            payload = self._client.fetch_case_detail(entry.case_external_id, entry.primary_procedure_id)
            case = map_case(payload, procedure_ids=entry.procedure_external_ids)
            outcome = self._catalog.upsert_case(case)
        except (ApiError, CatalogMappingError, StoreError) as exc:
            counts.failed += 1
            logger.warning(
                "Case sync failed run_id=%s case_id=%s error=%s",
                run_id,
                entry.case_external_id,
                exc,
            )
            return

        if outcome == UpsertOutcome.CREATED:
            counts.created += 1
        elif outcome == UpsertOutcome.UPDATED:
            counts.updated += 1
        else:
            counts.unchanged += 1

    def _stop_reason(
        self,
        started: float,
        should_stop: Callable[[], bool] | None,
    ) -> StopReason | None:
        if should_stop is not None and should_stop():
            return StopReason.STOP_REQUESTED
        if self._clock() - started >= self._time_limit_seconds:
            return StopReason.TIME_LIMIT
        if self._memory_sampler() >= self._memory_limit_mb:
            return StopReason.MEMORY_LIMIT
        return None
