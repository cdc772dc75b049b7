"""
app/domain/catalog.py

Local catalog records mirrored from upstream.

Upstream payloads are loosely typed; all defaulting happens in
``app.mappers.catalog_mapper`` so these records are always fully populated.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass(frozen=True)
class Procedure:
    """
    One category or procedure node of the upstream taxonomy.
    """

    external_id: str
    name: str
    slug: str
    case_count: int = 0
    parent_external_id: str | None = None
    description: str | None = None
    nudity: bool = False

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Procedure:
        return cls(
            external_id=str(payload["external_id"]),
            name=payload.get("name", ""),
            slug=payload.get("slug", ""),
            case_count=int(payload.get("case_count", 0)),
            parent_external_id=payload.get("parent_external_id"),
            description=payload.get("description"),
            nudity=bool(payload.get("nudity", False)),
        )


@dataclass(frozen=True)
class MediaRef:
    """
    Reference to one upstream image; the binary is never copied locally.
    """

    url: str
    kind: str = "photo"
    caption: str | None = None
    alt: str | None = None
    width: int | None = None
    height: int | None = None


@dataclass(frozen=True)
class Case:
    """
    One case record. ``raw_payload`` keeps the upstream body for rendering.
    """

    external_id: str
    procedure_ids: tuple[str, ...]
    title: str
    slug: str
    is_draft: bool = False
    media: tuple[MediaRef, ...] = ()
    raw_payload: dict[str, Any] = field(default_factory=dict, compare=False)
    content_hash: str = ""

    def to_payload(self) -> dict[str, Any]:
        return {
            "external_id": self.external_id,
            "procedure_ids": list(self.procedure_ids),
            "title": self.title,
            "slug": self.slug,
            "is_draft": self.is_draft,
            "media": [asdict(ref) for ref in self.media],
            "raw_payload": self.raw_payload,
            "content_hash": self.content_hash,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Case:
        return cls(
            external_id=str(payload["external_id"]),
            procedure_ids=tuple(str(value) for value in payload.get("procedure_ids", [])),
            title=payload.get("title", ""),
            slug=payload.get("slug", ""),
            is_draft=bool(payload.get("is_draft", False)),
            media=tuple(MediaRef(**ref) for ref in payload.get("media", [])),
            raw_payload=dict(payload.get("raw_payload") or {}),
            content_hash=payload.get("content_hash", ""),
        )


def compute_content_hash(payload: dict[str, Any]) -> str:
    """
    Stable digest of an upstream payload, used to skip no-op updates.
    """

    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class UpsertOutcome:
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
