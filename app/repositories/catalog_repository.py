"""
app/repositories/catalog_repository.py

Persistence helpers for mirrored procedures and cases.
"""

from __future__ import annotations

from app.domain.catalog import Case, Procedure, UpsertOutcome
from db.repositories.kv_store import KeyValueStore

PROCEDURE_PREFIX = "procedure:"
CASE_PREFIX = "case:"
CASE_ORDER_PREFIX = "case_order:"


class CatalogRepository:
    """
    Repository for catalog records, keyed by upstream external id.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    # Procedures

    def get_procedure(self, external_id: str) -> Procedure | None:
        payload = self._store.get(f"{PROCEDURE_PREFIX}{external_id}")
        if payload is None:
            return None
        return Procedure.from_payload(payload)

    def upsert_procedure(self, procedure: Procedure) -> str:
        """
        Insert or update one procedure. Returns an ``UpsertOutcome`` value.
        """

        existing = self.get_procedure(procedure.external_id)
        if existing == procedure:
            return UpsertOutcome.UNCHANGED
        self._store.set(f"{PROCEDURE_PREFIX}{procedure.external_id}", procedure.to_payload())
        return UpsertOutcome.CREATED if existing is None else UpsertOutcome.UPDATED

    def procedure_ids(self) -> list[str]:
        return [key[len(PROCEDURE_PREFIX) :] for key in self._store.keys_with_prefix(PROCEDURE_PREFIX)]

    def list_procedures(self) -> list[Procedure]:
        procedures: list[Procedure] = []
        for external_id in self.procedure_ids():
            procedure = self.get_procedure(external_id)
            if procedure is not None:
                procedures.append(procedure)
        return procedures

    def delete_procedure(self, external_id: str) -> bool:
        self._store.delete(f"{CASE_ORDER_PREFIX}{external_id}")
        return self._store.delete(f"{PROCEDURE_PREFIX}{external_id}")

    # Cases

    def get_case(self, external_id: str) -> Case | None:
        payload = self._store.get(f"{CASE_PREFIX}{external_id}")
        if payload is None:
            return None
        return Case.from_payload(payload)

    def upsert_case(self, case: Case) -> str:
        """
        Insert or update one case, skipping the write when the content hash matches.
        """

        existing = self.get_case(case.external_id)
        if existing is not None and case.content_hash and existing.content_hash == case.content_hash:
            return UpsertOutcome.UNCHANGED
        self._store.set(f"{CASE_PREFIX}{case.external_id}", case.to_payload())
        return UpsertOutcome.CREATED if existing is None else UpsertOutcome.UPDATED

    def case_ids(self) -> list[str]:
        return [key[len(CASE_PREFIX) :] for key in self._store.keys_with_prefix(CASE_PREFIX)]

    def delete_case(self, external_id: str) -> bool:
        return self._store.delete(f"{CASE_PREFIX}{external_id}")

    # Per-procedure case ordering

    def set_case_order(self, procedure_external_id: str, case_ids: list[str]) -> None:
        self._store.set(f"{CASE_ORDER_PREFIX}{procedure_external_id}", list(case_ids))

    def get_case_order(self, procedure_external_id: str) -> list[str]:
        return list(self._store.get(f"{CASE_ORDER_PREFIX}{procedure_external_id}") or [])
