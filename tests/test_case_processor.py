"""
tests/test_case_processor.py

Stage 3: batching, checkpointing, soft limits, and crash recovery.
"""

from __future__ import annotations

import pytest

from app.domain.manifest import CaseManifest
from app.domain.sync_run import StopReason, SyncStage
from app.repositories.catalog_repository import CatalogRepository
from app.repositories.sync_state_repository import SyncStateRepository
from app.services.case_processor_service import CaseProcessorService
from conftest import FakeClock, FakeUpstream, build_taxonomy
from db.repositories.kv_store import InMemoryKeyValueStore


def _manifest(count: int, run_id: str = "run-1") -> CaseManifest:
    manifest = CaseManifest(run_id=run_id)
    for index in range(count):
        manifest.add(f"C{index}", "101")
    return manifest


@pytest.fixture()
def upstream() -> FakeUpstream:
    return FakeUpstream(taxonomy=build_taxonomy({"101": 1}), listings={})


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def make_processor(make_client, upstream, store, clock):
    def _factory(*, target_store=None, **overrides) -> CaseProcessorService:
        target = target_store or store
        options = {
            "batch_size": 50,
            "time_limit_seconds": 10_000.0,
            "memory_limit_mb": 10_000.0,
            "clock": clock,
            "memory_sampler": lambda: 10.0,
        }
        options.update(overrides)
        return CaseProcessorService(
            client=make_client(upstream, store=target),
            catalog_repository=CatalogRepository(target),
            state_repository=SyncStateRepository(target),
            **options,
        )

    return _factory


class TestBatchedInvocations:
    def test_zero_time_budget_needs_five_invocations_for_250_cases(self, make_processor, upstream, store) -> None:
        processor = make_processor(time_limit_seconds=0.0)
        manifest = _manifest(250)

        results = []
        for _ in range(10):
            result = processor.process(manifest)
            results.append(result)
            if not result.needs_resume:
                break

        assert len(results) == 5
        assert [result.cursor for result in results] == [50, 100, 150, 200, 250]
        assert all(result.stop_reason is StopReason.TIME_LIMIT for result in results[:4])
        assert results[-1].needs_resume is False
        assert results[-1].counts.created == 250
        assert sorted(upstream.detail_calls) == sorted(manifest.case_ids)
        assert SyncStateRepository(store).get_checkpoint("run-1", SyncStage.CASES.value) is None

    def test_checkpoint_and_progress_saved_after_each_batch(self, make_processor, store) -> None:
        processor = make_processor(batch_size=3, time_limit_seconds=0.0)

        result = processor.process(_manifest(7))

        state = SyncStateRepository(store)
        checkpoint = state.get_checkpoint("run-1", SyncStage.CASES.value)
        assert result.needs_resume is True
        assert checkpoint is not None
        assert checkpoint.cursor == 3
        assert checkpoint.invocations == 1
        progress = state.get_progress("run-1")
        assert progress is not None
        assert (progress.current, progress.total) == (3, 7)

    def test_rerun_of_finished_cases_is_unchanged(self, make_processor) -> None:
        manifest = _manifest(4)
        make_processor().process(manifest)

        second = make_processor().process(_manifest(4, run_id="run-2"))

        assert second.counts.unchanged == 4
        assert second.counts.created == 0

    def test_duplicate_occurrences_seed_skipped_counter(self, make_processor) -> None:
        manifest = _manifest(3)
        manifest.add("C1", "102")
        manifest.add("C2", "103")

        result = make_processor().process(manifest)

        assert result.counts.skipped_duplicates == 2
        assert result.counts.attempted == 3


class TestSoftLimits:
    def test_stop_request_pauses_at_batch_boundary(self, make_processor) -> None:
        result = make_processor(batch_size=2).process(_manifest(6), should_stop=lambda: True)

        assert result.needs_resume is True
        assert result.stop_reason is StopReason.STOP_REQUESTED
        assert result.cursor == 2

    def test_memory_limit_pauses(self, make_processor) -> None:
        result = make_processor(batch_size=2, memory_limit_mb=100.0, memory_sampler=lambda: 150.0).process(
            _manifest(6)
        )

        assert result.stop_reason is StopReason.MEMORY_LIMIT
        assert result.cursor == 2

    def test_time_limit_measured_per_invocation(self, make_processor, upstream, clock) -> None:
        upstream.on_detail = lambda case_id: clock.advance(1.0)
        processor = make_processor(batch_size=2, time_limit_seconds=3.0)
        manifest = _manifest(10)

        first = processor.process(manifest)
        second = processor.process(manifest)

        assert (first.cursor, first.stop_reason) == (4, StopReason.TIME_LIMIT)
        assert (second.cursor, second.stop_reason) == (8, StopReason.TIME_LIMIT)
        assert second.processed_this_invocation == 4

    def test_last_batch_completes_even_when_limit_hit(self, make_processor) -> None:
        result = make_processor(batch_size=5, time_limit_seconds=0.0).process(_manifest(5))

        assert result.needs_resume is False
        assert result.stop_reason is None


class TestFailures:
    def test_per_case_failure_is_counted_and_processing_continues(self, make_processor, upstream, store) -> None:
        upstream.failing_details.add("C1")

        result = make_processor().process(_manifest(4))

        assert result.needs_resume is False
        assert result.counts.failed == 1
        assert result.counts.created == 3
        assert CatalogRepository(store).get_case("C1") is None

    def test_crash_mid_batch_resumes_from_last_checkpoint(self, make_processor, upstream, store) -> None:
        manifest = _manifest(20)

        def _explode(case_id: str) -> None:
            if case_id == "C7":
                raise RuntimeError("worker killed")

        upstream.on_detail = _explode
        with pytest.raises(RuntimeError):
            make_processor(batch_size=5).process(manifest)

        checkpoint = SyncStateRepository(store).get_checkpoint("run-1", SyncStage.CASES.value)
        assert checkpoint is not None
        assert checkpoint.cursor == 5

        upstream.on_detail = None
        resumed = make_processor(batch_size=5).process(manifest)
        assert resumed.needs_resume is False
        assert resumed.counts.created + resumed.counts.unchanged == 20

        reference_store = InMemoryKeyValueStore()
        make_processor(batch_size=5, target_store=reference_store).process(_manifest(20))

        interrupted = CatalogRepository(store)
        reference = CatalogRepository(reference_store)
        assert sorted(interrupted.case_ids()) == sorted(reference.case_ids())
        for case_id in reference.case_ids():
            assert interrupted.get_case(case_id).content_hash == reference.get_case(case_id).content_hash

    def test_heartbeat_failure_aborts_before_checkpoint_write(self, make_processor, store) -> None:
        beats: list[int] = []

        def _heartbeat() -> None:
            beats.append(len(beats))
            if len(beats) == 3:
                raise RuntimeError("lock lost")

        with pytest.raises(RuntimeError):
            make_processor(batch_size=2).process(_manifest(6), heartbeat=_heartbeat)

        checkpoint = SyncStateRepository(store).get_checkpoint("run-1", SyncStage.CASES.value)
        assert checkpoint is not None
        assert checkpoint.cursor == 2
