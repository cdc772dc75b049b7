"""
tests/test_procedure_sync.py

Stage 1: taxonomy upsert idempotence and fatal failures.
"""

from __future__ import annotations

import pytest

from app.repositories.catalog_repository import CatalogRepository
from app.services.procedure_sync_service import ProcedureSyncService
from app.services.sync_errors import StageFatalError
from conftest import FakeUpstream, build_taxonomy


@pytest.fixture()
def upstream() -> FakeUpstream:
    return FakeUpstream(taxonomy=build_taxonomy({"101": 3, "102": 2, "103": 1}), listings={})


@pytest.fixture()
def service(make_client, upstream, store) -> ProcedureSyncService:
    return ProcedureSyncService(client=make_client(upstream), repository=CatalogRepository(store))


class TestProcedureSync:
    def test_first_run_creates_every_node(self, service, store) -> None:
        result = service.sync_procedures()

        assert (result.created, result.updated, result.procedure_count) == (4, 0, 4)
        assert result.upstream_ids == ("body", "101", "102", "103")
        assert CatalogRepository(store).get_procedure("102").case_count == 2

    def test_rerun_with_unchanged_data_is_a_no_op(self, service) -> None:
        service.sync_procedures()
        result = service.sync_procedures()

        assert (result.created, result.updated) == (0, 0)

    def test_changed_fields_count_as_updates(self, service, upstream, store) -> None:
        service.sync_procedures()
        upstream.taxonomy[0]["procedures"][1]["name"] = "Renamed"
        upstream.taxonomy[0]["procedures"][2]["totalCase"] = 9

        result = service.sync_procedures()

        assert (result.created, result.updated) == (0, 2)
        assert CatalogRepository(store).get_procedure("102").name == "Renamed"

    def test_taxonomy_failure_is_stage_fatal(self, service, upstream) -> None:
        upstream.taxonomy_fails = True

        with pytest.raises(StageFatalError) as exc_info:
            service.sync_procedures()

        assert exc_info.value.stage == "procedures"

    def test_empty_taxonomy_is_stage_fatal(self, service, upstream) -> None:
        upstream.taxonomy = []

        with pytest.raises(StageFatalError):
            service.sync_procedures()
