"""
app/services/manifest_builder_service.py

Stage 2: page through case listings per procedure and build the
deduplicated case manifest for a run.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from app.connectors.base import ApiError
from app.connectors.catalog_client import CatalogApiClient
from app.domain.catalog import Procedure
from app.domain.manifest import CaseManifest
from app.domain.sync_run import SyncStage
from app.mappers.catalog_mapper import extract_listing_ids
from app.repositories.catalog_repository import CatalogRepository
from app.repositories.sync_state_repository import SyncStateRepository
from app.services.sync_errors import StageFatalError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], None]


@dataclass
class ManifestBuildResult:
    manifest: CaseManifest
    warnings: list[str] = field(default_factory=list)
    failed_procedures: list[str] = field(default_factory=list)
    truncated_procedures: list[str] = field(default_factory=list)

    @property
    def incomplete_procedures(self) -> list[str]:
        """
        Procedures whose listing may be missing cases.
        """

        return list(dict.fromkeys(self.failed_procedures + self.truncated_procedures))


def listable_procedures(procedures: Iterable[Procedure], allowed_ids: set[str] | None = None) -> list[Procedure]:
    """
    Leaf procedures with cases. Category nodes that own child procedures
    are skipped so their children's cases are not listed twice.
    """

    procedures = list(procedures)
    parents = {procedure.parent_external_id for procedure in procedures if procedure.parent_external_id}
    selected = [
        procedure
        for procedure in procedures
        if procedure.case_count > 0 and procedure.external_id not in parents
    ]
    if allowed_ids is not None:
        selected = [procedure for procedure in selected if procedure.external_id in allowed_ids]
    return selected


class ManifestBuilderService:
    """
    Builds and persists the case manifest keyed by ``run_id``.
    """

    def __init__(
        self,
        *,
        client: CatalogApiClient,
        catalog_repository: CatalogRepository,
        state_repository: SyncStateRepository,
        max_pages: int = 100,
    ) -> None:
        self._client = client
        self._catalog = catalog_repository
        self._state = state_repository
        self._max_pages = max(1, max_pages)

    def build_manifest(
        self,
        run_id: str,
        *,
        procedure_ids: Iterable[str] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ManifestBuildResult:
        allowed = set(procedure_ids) if procedure_ids is not None else None
        procedures = listable_procedures(self._catalog.list_procedures(), allowed)
        manifest = CaseManifest(run_id=run_id)
        result = ManifestBuildResult(manifest=manifest)

        for index, procedure in enumerate(procedures, start=1):
            try:
                self._collect_procedure(manifest, procedure, result)
            except ApiError as exc:
                message = f"Listing failed for procedure {procedure.external_id}: {exc.message}"
                logger.warning(
                    "Case listing failed run_id=%s procedure_id=%s kind=%s error=%s",
                    run_id,
                    procedure.external_id,
                    exc.kind.value,
                    exc,
                )
                result.warnings.append(message)
                result.failed_procedures.append(procedure.external_id)
            if on_progress is not None:
                on_progress(index, len(procedures), f"Listed cases for {procedure.name}")

        if len(manifest) == 0:
            raise StageFatalError(SyncStage.MANIFEST.value, "no cases were listed for any procedure.")

        self._state.save_manifest(manifest)
        for procedure_id, case_ids in manifest.procedure_order.items():
            self._catalog.set_case_order(procedure_id, case_ids)

        totals = manifest.totals()
        logger.info(
            "Manifest built run_id=%s procedures=%s cases=%s duplicate_occurrences=%s duplicate_unique_ids=%s",
            run_id,
            totals.procedure_count,
            totals.case_count,
            totals.duplicate_occurrences,
            totals.duplicate_unique_ids,
        )
        return result

    def _collect_procedure(
        self,
        manifest: CaseManifest,
        procedure: Procedure,
        result: ManifestBuildResult,
    ) -> None:
        # Pages are fetched into a local list first so a failure midway leaves
        # the manifest untouched for this procedure.
        sightings: list[str] = []
        page = 1
        while page <= self._max_pages:
            ids = extract_listing_ids(self._client.fetch_case_listing_page(procedure.external_id, page))
            if not ids:
                break
            sightings.extend(ids)
            page += 1
        else:
            logger.warning(
                "Listing page limit reached run_id=%s procedure_id=%s max_pages=%s",
                manifest.run_id,
                procedure.external_id,
                self._max_pages,
            )
            result.truncated_procedures.append(procedure.external_id)
            result.warnings.append(
                f"Listing for procedure {procedure.external_id} stopped at the {self._max_pages} page limit"
            )

        for case_id in sightings:
            existing = manifest.get(case_id)
            previous_procedures = list(existing.procedure_external_ids) if existing else []
            if manifest.add(case_id, procedure.external_id) and procedure.external_id not in previous_procedures:
                logger.warning(
                    "Duplicate case across procedures run_id=%s case_id=%s procedures=%s",
                    manifest.run_id,
                    case_id,
                    ",".join(previous_procedures + [procedure.external_id]),
                )
