"""
tests/test_sync_orchestrator.py

End-to-end runs of the staged sync against the in-memory upstream.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from app.domain.sync_run import SyncRun, SyncRunStatus, SyncStage
from app.repositories.catalog_repository import CatalogRepository
from app.repositories.sync_state_repository import SyncStateRepository
from app.services.sync_errors import SyncAlreadyRunningError
from app.services.sync_orchestrator import (
    OUTCOME_COMPLETED,
    OUTCOME_COMPLETED_WITH_WARNINGS,
    OUTCOME_FAILED,
    SyncOrchestrator,
)
from conftest import FakeClock, FakeUpstream, build_taxonomy
from db.repositories.kv_store import InMemoryKeyValueStore


class ManualNow:
    def __init__(self) -> None:
        self.value = datetime(2026, 10, 18, 3, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += timedelta(seconds=seconds)


class SteppingNow:
    def __init__(self) -> None:
        self.value = datetime(2026, 10, 18, 3, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.value += timedelta(seconds=1)
        return self.value


@pytest.fixture()
def upstream() -> FakeUpstream:
    return FakeUpstream(
        taxonomy=build_taxonomy({"101": 3, "102": 2, "103": 1}),
        listings={"101": ["A", "B", "C"], "102": ["B", "D"], "103": ["E"]},
        page_size=2,
    )


@pytest.fixture()
def orchestrator(make_client, upstream, store, sync_settings) -> SyncOrchestrator:
    return SyncOrchestrator(
        client=make_client(upstream),
        store=store,
        settings=sync_settings,
        clock=FakeClock(),
        memory_sampler=lambda: 10.0,
        now=SteppingNow(),
        owner="worker-1",
    )


class TestFullSync:
    def test_completes_and_reports(self, orchestrator, upstream, store) -> None:
        run = orchestrator.run_full_sync()

        assert run.status is SyncRunStatus.COMPLETED
        assert run.stage is SyncStage.DONE
        assert run.upstream_job_id == "77"

        report = orchestrator.build_report(run.run_id)
        assert report["outcome"] == OUTCOME_COMPLETED
        assert report["procedures"] == {"created": 4, "updated": 0}
        assert report["cases"] == {"created": 5, "updated": 0, "unchanged": 0, "failed": 0, "attempted": 5}
        assert report["duplicates"] == {"unique": 1, "occurrences": 1}
        assert report["duration_seconds"] > 0

        assert sorted(CatalogRepository(store).case_ids()) == ["A", "B", "C", "D", "E"]
        assert CatalogRepository(store).get_case("B").procedure_ids == ("101", "102")
        assert [item["status"] for item in upstream.reports] == ["SUCCESS"]
        assert upstream.reports[0]["casesSynced"] == 5
        assert upstream.registrations[0]["body"]["syncType"] == "MANUAL"

    def test_completed_run_leaves_no_resumable_state(self, orchestrator, store) -> None:
        run = orchestrator.run_full_sync()

        state = SyncStateRepository(store)
        assert state.get_active_run_id() is None
        assert state.get_manifest(run.run_id) is None
        assert state.get_checkpoint(run.run_id, SyncStage.CASES.value) is None
        assert state.lock_holder() is None
        assert orchestrator.resume() is None

    def test_second_run_reports_unchanged_cases(self, orchestrator) -> None:
        orchestrator.run_full_sync()
        second = orchestrator.run_full_sync()

        report = orchestrator.build_report(second.run_id)
        assert report["procedures"] == {"created": 0, "updated": 0}
        assert report["cases"]["unchanged"] == 5
        assert report["cases"]["created"] == 0

    def test_case_failure_completes_with_warnings(self, orchestrator, upstream) -> None:
        upstream.failing_details.add("D")

        run = orchestrator.run_full_sync()

        report = orchestrator.build_report(run.run_id)
        assert run.status is SyncRunStatus.COMPLETED
        assert report["outcome"] == OUTCOME_COMPLETED_WITH_WARNINGS
        assert report["cases"]["failed"] == 1
        assert upstream.reports[-1]["status"] == "PARTIAL"

    def test_listing_failure_becomes_run_warning(self, orchestrator, upstream) -> None:
        upstream.failing_listings.add("103")

        run = orchestrator.run_full_sync()

        assert run.status is SyncRunStatus.COMPLETED
        assert "103" in run.warnings[0]
        assert run.incomplete_procedures == ["103"]
        assert orchestrator.build_report(run.run_id)["outcome"] == OUTCOME_COMPLETED_WITH_WARNINGS

    def test_taxonomy_failure_fails_run(self, orchestrator, upstream, store) -> None:
        upstream.taxonomy_fails = True

        run = orchestrator.run_full_sync()

        assert run.status is SyncRunStatus.FAILED
        assert run.failed_stage is SyncStage.PROCEDURES
        assert run.error
        assert orchestrator.build_report(run.run_id)["outcome"] == OUTCOME_FAILED
        assert orchestrator.history()[0]["status"] == "failed"
        assert SyncStateRepository(store).get_active_run_id() is None
        assert upstream.reports[-1]["status"] == "FAILED"

    def test_removes_orphans_after_successful_run(self, orchestrator, upstream, store) -> None:
        orchestrator.run_full_sync()
        upstream.taxonomy = build_taxonomy({"101": 3, "102": 2})
        del upstream.listings["103"]

        run = orchestrator.run_full_sync()

        assert run.orphans_removed == {"procedures_deleted": 1, "cases_deleted": 1}
        repository = CatalogRepository(store)
        assert repository.get_procedure("103") is None
        assert repository.get_case("E") is None

    def test_history_is_newest_first(self, orchestrator) -> None:
        first = orchestrator.run_full_sync()
        second = orchestrator.run_full_sync(sync_type="scheduled")

        history = orchestrator.history()
        assert [item["run_id"] for item in history] == [second.run_id, first.run_id]
        assert history[0]["sync_type"] == "scheduled"


class TestLocking:
    def test_foreign_lock_blocks_new_run(self, orchestrator, store) -> None:
        SyncStateRepository(store).acquire_lock("worker-2", 600)

        with pytest.raises(SyncAlreadyRunningError):
            orchestrator.run_full_sync()
        assert orchestrator.is_running() is True

    def test_lock_released_after_failure(self, orchestrator, upstream) -> None:
        upstream.taxonomy_fails = True
        orchestrator.run_full_sync()

        assert orchestrator.is_running() is False


class TestStopAndResume:
    def test_stop_pauses_and_never_fails(self, orchestrator, upstream, store) -> None:
        upstream.on_detail = lambda case_id: orchestrator.request_stop()

        run = orchestrator.run_full_sync()

        assert run.status is SyncRunStatus.PAUSED
        assert run.stage is SyncStage.CASES
        assert run.error is None
        assert run.counts.attempted == 2
        assert SyncStateRepository(store).get_active_run_id() == run.run_id
        assert upstream.reports == []

    def test_scheduled_resume_waits_for_explicit_resume(self, orchestrator, upstream) -> None:
        upstream.on_detail = lambda case_id: orchestrator.request_stop()
        paused = orchestrator.run_full_sync()
        upstream.on_detail = None

        assert orchestrator.resume() is None

        resumed = orchestrator.resume(force=True)
        assert resumed is not None
        assert resumed.run_id == paused.run_id
        assert resumed.status is SyncRunStatus.COMPLETED
        assert resumed.counts.created == 5
        assert sorted(upstream.detail_calls) == ["A", "B", "C", "D", "E"]

    def test_status_reports_stage_weighted_percentage(self, orchestrator, upstream) -> None:
        upstream.on_detail = lambda case_id: orchestrator.request_stop()
        run = orchestrator.run_full_sync()

        status = orchestrator.get_run_status(run.run_id)
        assert status["status"] == "paused"
        assert status["stage"] == "cases"
        # 2 of 5 cases done within the 30..100 band.
        assert status["overall_percentage"] == 58
        assert status["current_item"] == "Processed 2 of 5 cases"

        upstream.on_detail = None
        orchestrator.resume(force=True)
        assert orchestrator.get_run_status(run.run_id)["overall_percentage"] == 100

    def test_resume_walks_one_stage_per_invocation(self, orchestrator, store) -> None:
        state = SyncStateRepository(store)
        run = SyncRun(
            run_id="run-manual",
            stage=SyncStage.PROCEDURES,
            status=SyncRunStatus.PAUSED,
            started_at=datetime(2026, 10, 18, 2, 0, tzinfo=timezone.utc),
        )
        state.save_run(run)
        state.set_active_run_id(run.run_id)

        after_procedures = orchestrator.resume()
        assert (after_procedures.status, after_procedures.stage) == (SyncRunStatus.PAUSED, SyncStage.MANIFEST)

        after_manifest = orchestrator.resume()
        assert (after_manifest.status, after_manifest.stage) == (SyncRunStatus.PAUSED, SyncStage.CASES)
        assert after_manifest.manifest_size == 5

        finished = orchestrator.resume()
        assert finished.status is SyncRunStatus.COMPLETED

    def test_new_full_sync_supersedes_paused_run(self, orchestrator, upstream) -> None:
        upstream.on_detail = lambda case_id: orchestrator.request_stop()
        paused = orchestrator.run_full_sync()
        upstream.on_detail = None

        fresh = orchestrator.run_full_sync()

        assert fresh.status is SyncRunStatus.COMPLETED
        previous = orchestrator.get_run_status(paused.run_id)
        assert previous["status"] == "failed"
        assert previous["error"] == "superseded by a new full sync"

    def test_unknown_run_has_no_status(self, orchestrator) -> None:
        assert orchestrator.get_run_status("missing") is None
        assert orchestrator.build_report("missing") is None


class TestOrphanSafety:
    @pytest.fixture()
    def two_procedures(self) -> FakeUpstream:
        return FakeUpstream(
            taxonomy=build_taxonomy({"101": 3, "102": 2}),
            listings={"101": ["A", "B", "C"], "102": ["D", "E"]},
            page_size=2,
        )

    def _orchestrator(self, make_client, upstream, store, settings) -> SyncOrchestrator:
        return SyncOrchestrator(
            client=make_client(upstream),
            store=store,
            settings=settings,
            clock=FakeClock(),
            memory_sampler=lambda: 10.0,
            now=SteppingNow(),
            owner="worker-1",
        )

    def test_failed_listing_keeps_that_procedures_cases(
        self, make_client, two_procedures, store, sync_settings
    ) -> None:
        orchestrator = self._orchestrator(make_client, two_procedures, store, sync_settings)
        orchestrator.run_full_sync()
        two_procedures.failing_listings.add("102")

        run = orchestrator.run_full_sync()

        assert run.status is SyncRunStatus.COMPLETED
        assert run.orphans_removed["cases_deleted"] == 0
        assert any("Orphan case cleanup skipped" in warning for warning in run.warnings)
        assert sorted(CatalogRepository(store).case_ids()) == ["A", "B", "C", "D", "E"]

    def test_truncated_listing_keeps_unlisted_cases(
        self, make_client, two_procedures, store, sync_settings
    ) -> None:
        self._orchestrator(make_client, two_procedures, store, sync_settings).run_full_sync()
        limited = self._orchestrator(
            make_client, two_procedures, store, replace(sync_settings, max_listing_pages=1)
        )

        run = limited.run_full_sync()

        assert run.incomplete_procedures == ["101", "102"]
        assert run.orphans_removed["cases_deleted"] == 0
        assert CatalogRepository(store).get_case("C") is not None

    def test_complete_listings_still_remove_orphan_cases(
        self, make_client, two_procedures, store, sync_settings
    ) -> None:
        orchestrator = self._orchestrator(make_client, two_procedures, store, sync_settings)
        orchestrator.run_full_sync()
        two_procedures.listings["102"] = ["D"]

        run = orchestrator.run_full_sync()

        assert run.orphans_removed == {"procedures_deleted": 0, "cases_deleted": 1}
        assert CatalogRepository(store).get_case("E") is None


class TestLockOwnership:
    @pytest.fixture()
    def manual_now(self) -> ManualNow:
        return ManualNow()

    @pytest.fixture()
    def shared_store(self, manual_now) -> InMemoryKeyValueStore:
        return InMemoryKeyValueStore(now=manual_now)

    def test_refresh_requires_current_owner(self, shared_store, manual_now) -> None:
        state = SyncStateRepository(shared_store)
        assert state.acquire_lock("worker-1", 60)

        assert state.refresh_lock("worker-2", 60) is False
        manual_now.advance(50)
        assert state.refresh_lock("worker-1", 60) is True
        manual_now.advance(50)
        assert state.lock_holder() == "worker-1"
        manual_now.advance(11)
        assert state.refresh_lock("worker-1", 60) is False

    def test_worker_that_lost_lock_stops_writing(
        self, make_client, shared_store, manual_now, sync_settings
    ) -> None:
        upstream = FakeUpstream(
            taxonomy=build_taxonomy({"101": 3, "102": 3}),
            listings={"101": ["A", "B", "C"], "102": ["D", "E", "F"]},
        )
        settings = replace(sync_settings, lock_ttl_seconds=60)

        def _worker(owner: str) -> SyncOrchestrator:
            return SyncOrchestrator(
                client=make_client(upstream, store=shared_store),
                store=shared_store,
                settings=settings,
                clock=FakeClock(),
                memory_sampler=lambda: 10.0,
                now=SteppingNow(),
                owner=owner,
            )

        first_worker, second_worker = _worker("worker-1"), _worker("worker-2")
        takeovers: list[SyncRun | None] = []
        expired: list[str] = []

        def _lock_expires_mid_batch(case_id: str) -> None:
            if case_id == "C" and not expired:
                expired.append(case_id)
                manual_now.advance(61)
                takeovers.append(second_worker.resume(force=True))

        upstream.on_detail = _lock_expires_mid_batch

        run = first_worker.run_full_sync()

        taken_over = takeovers[0]
        assert taken_over is not None
        assert taken_over.run_id == run.run_id
        assert taken_over.status is SyncRunStatus.COMPLETED
        assert run.status is SyncRunStatus.COMPLETED
        assert upstream.detail_calls.count("E") == 1
        assert upstream.detail_calls.count("F") == 1
        assert len(first_worker.history()) == 1
        assert [report["status"] for report in upstream.reports] == ["SUCCESS"]

        state = SyncStateRepository(shared_store)
        assert state.lock_holder() is None
        assert state.get_checkpoint(run.run_id, SyncStage.CASES.value) is None
