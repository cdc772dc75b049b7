"""
tests/test_manifest_builder.py

Stage 2: paging, deduplication across procedures, and failure isolation.
"""

from __future__ import annotations

import pytest

from app.repositories.catalog_repository import CatalogRepository
from app.repositories.sync_state_repository import SyncStateRepository
from app.services.manifest_builder_service import ManifestBuilderService
from app.services.procedure_sync_service import ProcedureSyncService
from app.services.sync_errors import StageFatalError
from conftest import FakeUpstream, build_taxonomy


@pytest.fixture()
def upstream() -> FakeUpstream:
    return FakeUpstream(
        taxonomy=build_taxonomy({"101": 3, "102": 2, "103": 1}),
        listings={"101": ["A", "B", "C"], "102": ["B", "D"], "103": []},
        page_size=2,
    )


@pytest.fixture()
def client(make_client, upstream):
    return make_client(upstream)


@pytest.fixture()
def builder(client, store) -> ManifestBuilderService:
    ProcedureSyncService(client=client, repository=CatalogRepository(store)).sync_procedures()
    return ManifestBuilderService(
        client=client,
        catalog_repository=CatalogRepository(store),
        state_repository=SyncStateRepository(store),
    )


class TestManifestBuilder:
    def test_three_procedures_two_listings_with_shared_case(self, builder, store) -> None:
        result = builder.build_manifest("run-1")
        manifest = result.manifest

        assert manifest.case_ids == ["A", "B", "C", "D"]
        assert manifest.get("B").procedure_external_ids == ["101", "102"]
        assert manifest.duplicate_occurrences == 1
        assert manifest.totals().duplicate_unique_ids == 1
        assert result.warnings == []

        persisted = SyncStateRepository(store).get_manifest("run-1")
        assert persisted is not None
        assert persisted.case_ids == ["A", "B", "C", "D"]

    def test_pages_until_empty_page(self, builder, upstream) -> None:
        builder.build_manifest("run-1")

        assert [page for procedure_id, page in upstream.listing_calls if procedure_id == "101"] == [1, 2, 3]
        assert "body" not in {procedure_id for procedure_id, _ in upstream.listing_calls}

    def test_persists_listing_order_per_procedure(self, builder, store) -> None:
        builder.build_manifest("run-1")

        repository = CatalogRepository(store)
        assert repository.get_case_order("101") == ["A", "B", "C"]
        assert repository.get_case_order("102") == ["B", "D"]

    def test_single_listing_failure_is_skipped_with_warning(self, builder, upstream) -> None:
        upstream.failing_listings.add("102")

        result = builder.build_manifest("run-1")

        assert result.manifest.case_ids == ["A", "B", "C"]
        assert result.manifest.duplicate_occurrences == 0
        assert len(result.warnings) == 1
        assert "102" in result.warnings[0]
        assert result.failed_procedures == ["102"]
        assert result.incomplete_procedures == ["102"]

    def test_empty_manifest_is_stage_fatal(self, builder, upstream) -> None:
        upstream.failing_listings.update({"101", "102", "103"})

        with pytest.raises(StageFatalError) as exc_info:
            builder.build_manifest("run-1")

        assert exc_info.value.stage == "manifest"

    def test_page_limit_truncates_and_is_reported(self, client, store, builder) -> None:
        limited = ManifestBuilderService(
            client=client,
            catalog_repository=CatalogRepository(store),
            state_repository=SyncStateRepository(store),
            max_pages=1,
        )

        result = limited.build_manifest("run-2")

        assert result.manifest.case_ids == ["A", "B", "D"]
        assert result.truncated_procedures == ["101", "102"]
        assert result.incomplete_procedures == ["101", "102"]
        assert len(result.warnings) == 2

    def test_procedure_filter_limits_listing(self, builder) -> None:
        result = builder.build_manifest("run-1", procedure_ids=["102"])
        assert result.manifest.case_ids == ["B", "D"]
