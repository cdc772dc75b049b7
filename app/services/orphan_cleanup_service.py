"""
app/services/orphan_cleanup_service.py

Removes local procedures and cases that are no longer present upstream.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from app.repositories.catalog_repository import CatalogRepository

logger = logging.getLogger(__name__)


class OrphanCleanupService:
    def __init__(self, *, repository: CatalogRepository) -> None:
        self._repository = repository

    def find_orphans(
        self,
        *,
        upstream_procedure_ids: Iterable[str],
        upstream_case_ids: Iterable[str],
    ) -> dict[str, list[str]]:
        procedure_ids = set(upstream_procedure_ids)
        case_ids = set(upstream_case_ids)
        return {
            "procedures": [pid for pid in self._repository.procedure_ids() if pid not in procedure_ids],
            "cases": [cid for cid in self._repository.case_ids() if cid not in case_ids],
        }

    def cleanup(
        self,
        *,
        upstream_procedure_ids: Iterable[str],
        upstream_case_ids: Iterable[str],
        include_cases: bool = True,
    ) -> dict[str, int]:
        """
        Delete orphans. Nothing is deleted when either upstream set is empty;
        cases are kept when ``include_cases`` is false.
        """

        procedure_ids = list(upstream_procedure_ids)
        case_ids = list(upstream_case_ids)
        if not procedure_ids or not case_ids:
            logger.warning(
                "Orphan cleanup skipped procedures=%s cases=%s",
                len(procedure_ids),
                len(case_ids),
            )
            return {"procedures_deleted": 0, "cases_deleted": 0}

        orphans = self.find_orphans(upstream_procedure_ids=procedure_ids, upstream_case_ids=case_ids)
        procedures_deleted = sum(1 for pid in orphans["procedures"] if self._repository.delete_procedure(pid))
        cases_deleted = 0
        if include_cases:
            cases_deleted = sum(1 for cid in orphans["cases"] if self._repository.delete_case(cid))
        elif orphans["cases"]:
            logger.warning("Orphan case cleanup skipped candidates=%s", len(orphans["cases"]))
        logger.info(
            "Orphan cleanup finished procedures_deleted=%s cases_deleted=%s",
            procedures_deleted,
            cases_deleted,
        )
        return {"procedures_deleted": procedures_deleted, "cases_deleted": cases_deleted}
