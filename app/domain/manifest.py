"""
app/domain/manifest.py

Deduplicated case manifest built by the listing stage.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class ManifestEntry:
    case_external_id: str
    procedure_external_ids: list[str]
    first_seen_order: int

    @property
    def primary_procedure_id(self) -> str | None:
        return self.procedure_external_ids[0] if self.procedure_external_ids else None


@dataclass(frozen=True)
class ManifestTotals:
    procedure_count: int
    case_count: int
    duplicate_occurrences: int
    duplicate_unique_ids: int

    def as_dict(self) -> dict[str, int]:
        return {
            "procedure_count": self.procedure_count,
            "case_count": self.case_count,
            "duplicate_occurrences": self.duplicate_occurrences,
            "duplicate_unique_ids": self.duplicate_unique_ids,
        }


@dataclass
class CaseManifest:
    """
    Insertion-ordered, unique-by-case-id manifest.

    ``procedure_external_ids`` is kept as an ordered list with set semantics
    so the persisted form round-trips through JSON deterministically.
    """

    run_id: str
    _entries: dict[str, ManifestEntry] = field(default_factory=dict)
    procedure_order: dict[str, list[str]] = field(default_factory=dict)
    total_listing_rows: int = 0
    duplicate_occurrences: int = 0
    _ordered: list[ManifestEntry] = field(default_factory=list, repr=False, compare=False)

    def add(self, case_external_id: str, procedure_external_id: str) -> bool:
        """
        Record one listing row. Returns ``True`` when the case id was already
        present (a duplicate occurrence), ``False`` for a new entry.
        """

        self.total_listing_rows += 1
        order = self.procedure_order.setdefault(procedure_external_id, [])

        entry = self._entries.get(case_external_id)
        if entry is None:
            order.append(case_external_id)
            self._append(
                ManifestEntry(
                    case_external_id=case_external_id,
                    procedure_external_ids=[procedure_external_id],
                    first_seen_order=len(self._entries),
                )
            )
            return False

        # An entry lists a procedure exactly when that procedure's order lists the case.
        if procedure_external_id not in entry.procedure_external_ids:
            entry.procedure_external_ids.append(procedure_external_id)
            order.append(case_external_id)
        self.duplicate_occurrences += 1
        return True

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, case_external_id: object) -> bool:
        return case_external_id in self._entries

    def _append(self, entry: ManifestEntry) -> None:
        self._entries[entry.case_external_id] = entry
        self._ordered.append(entry)

    @property
    def entries(self) -> list[ManifestEntry]:
        return list(self._ordered)

    def slice(self, start: int, stop: int) -> list[ManifestEntry]:
        return self._ordered[start:stop]

    def get(self, case_external_id: str) -> ManifestEntry | None:
        return self._entries.get(case_external_id)

    @property
    def case_ids(self) -> list[str]:
        return list(self._entries.keys())

    @property
    def duplicate_unique_ids(self) -> int:
        return sum(1 for entry in self._entries.values() if len(entry.procedure_external_ids) > 1)

    def totals(self) -> ManifestTotals:
        return ManifestTotals(
            procedure_count=len(self.procedure_order),
            case_count=len(self._entries),
            duplicate_occurrences=self.duplicate_occurrences,
            duplicate_unique_ids=self.duplicate_unique_ids,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "entries": [
                {
                    "case_external_id": entry.case_external_id,
                    "procedure_external_ids": list(entry.procedure_external_ids),
                    "first_seen_order": entry.first_seen_order,
                }
                for entry in self._entries.values()
            ],
            "procedure_order": {key: list(value) for key, value in self.procedure_order.items()},
            "total_listing_rows": self.total_listing_rows,
            "duplicate_occurrences": self.duplicate_occurrences,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> CaseManifest:
        manifest = cls(
            run_id=payload["run_id"],
            procedure_order={key: list(value) for key, value in payload.get("procedure_order", {}).items()},
            total_listing_rows=int(payload.get("total_listing_rows", 0)),
            duplicate_occurrences=int(payload.get("duplicate_occurrences", 0)),
        )
        for raw in sorted(payload.get("entries", []), key=lambda item: item["first_seen_order"]):
            entry = ManifestEntry(
                case_external_id=str(raw["case_external_id"]),
                procedure_external_ids=[str(value) for value in raw["procedure_external_ids"]],
                first_seen_order=int(raw["first_seen_order"]),
            )
            manifest._append(entry)
        return manifest
