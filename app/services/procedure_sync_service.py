"""
app/services/procedure_sync_service.py

Stage 1: mirror the upstream taxonomy into local procedures.
"""

from __future__ import annotations

import logging

from app.connectors.base import ApiError
from app.connectors.catalog_client import CatalogApiClient
from app.domain.catalog import UpsertOutcome
from app.domain.sync_run import ProcedureSyncResult, SyncStage
from app.mappers.catalog_mapper import map_taxonomy
from app.repositories.catalog_repository import CatalogRepository
from app.services.sync_errors import StageFatalError
from db.repositories.errors import StoreError

logger = logging.getLogger(__name__)


class ProcedureSyncService:
    """
    Fetches the full taxonomy in one live call and upserts each procedure.
    """

    def __init__(self, *, client: CatalogApiClient, repository: CatalogRepository) -> None:
        self._client = client
        self._repository = repository

    def sync_procedures(self) -> ProcedureSyncResult:
        try:
            categories = self._client.fetch_taxonomy()
        except ApiError as exc:
            logger.error("Taxonomy fetch failed kind=%s error=%s", exc.kind.value, exc)
            raise StageFatalError(SyncStage.PROCEDURES.value, str(exc)) from exc

        procedures = map_taxonomy(categories)
        if not procedures:
            raise StageFatalError(SyncStage.PROCEDURES.value, "taxonomy contained no procedures.")

        created = 0
        updated = 0
        try:
            for procedure in procedures:
                outcome = self._repository.upsert_procedure(procedure)
                if outcome == UpsertOutcome.CREATED:
                    created += 1
                elif outcome == UpsertOutcome.UPDATED:
                    updated += 1
        except StoreError as exc:
            raise StageFatalError(SyncStage.PROCEDURES.value, str(exc)) from exc

        logger.info(
            "Procedure sync finished procedures=%s created=%s updated=%s",
            len(procedures),
            created,
            updated,
        )
        return ProcedureSyncResult(
            created=created,
            updated=updated,
            procedure_count=len(procedures),
            upstream_ids=tuple(procedure.external_id for procedure in procedures),
        )
