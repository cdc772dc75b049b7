"""
app/mappers/catalog_mapper.py

Mapping from loosely-typed upstream payloads to catalog records.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from typing import Any, Iterable, Mapping

from app.domain.catalog import Case, MediaRef, Procedure, compute_content_hash

logger = logging.getLogger(__name__)

_INVALID_IDS = {"", "0", "none", "null"}
_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


class CatalogMappingError(ValueError):
    """
    Raised when an upstream record lacks the fields needed to build a local record.
    """


def slugify(value: str) -> str:
    """
    Lowercase ASCII slug with single hyphens between words.
    """

    normalized = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    return _SLUG_STRIP.sub("-", normalized.lower()).strip("-")


def normalize_external_id(value: Any) -> str | None:
    """
    Return a canonical string id, or ``None`` for the upstream "no id" markers.
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    if text.lower() in _INVALID_IDS:
        return None
    return text


def first_valid_id(values: Any) -> str | None:
    if not isinstance(values, (list, tuple)):
        values = [values]
    for value in values:
        normalized = normalize_external_id(value)
        if normalized is not None:
            return normalized
    return None


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _procedure_from_node(node: Mapping[str, Any], *, parent_external_id: str | None) -> Procedure | None:
    name = _optional_text(node.get("name")) or ""
    slug = _optional_text(node.get("slugName")) or _optional_text(node.get("slug")) or slugify(name)
    external_id = first_valid_id(node.get("ids", node.get("id")))
    if external_id is None:
        if parent_external_id is not None:
            return None
        external_id = slug
    if not external_id:
        return None

    case_count = node.get("totalCase", node.get("caseCount", 0))
    return Procedure(
        external_id=external_id,
        name=name or slug,
        slug=slug or slugify(external_id),
        case_count=max(0, _as_int(case_count)),
        parent_external_id=parent_external_id,
        description=_optional_text(node.get("description")),
        nudity=_as_bool(node.get("nudity", False)),
    )


def map_taxonomy(categories: Iterable[Any]) -> list[Procedure]:
    """
    Flatten the category/procedure tree into Procedures.

    Categories come first, each followed by its children. Nodes without a
    usable id are skipped; the first occurrence of an id wins.
    """

    procedures: dict[str, Procedure] = {}
    for category in categories:
        if not isinstance(category, Mapping):
            logger.warning("Skipping taxonomy node with unexpected type=%s", type(category).__name__)
            continue

        parent = _procedure_from_node(category, parent_external_id=None)
        if parent is not None and parent.external_id not in procedures:
            procedures[parent.external_id] = parent

        children = category.get("procedures") or []
        if not isinstance(children, list):
            continue
        for child in children:
            if not isinstance(child, Mapping):
                continue
            procedure = _procedure_from_node(
                child,
                parent_external_id=parent.external_id if parent is not None else None,
            )
            if procedure is None:
                logger.warning("Skipping procedure without valid id name=%s", child.get("name"))
                continue
            if procedure.external_id in procedures:
                continue
            procedures[procedure.external_id] = procedure
    return list(procedures.values())


def extract_listing_ids(rows: Iterable[Any]) -> list[str]:
    """
    Listing rows are either bare ids or objects carrying ``id``.
    """

    ids: list[str] = []
    for row in rows:
        raw = row.get("id") if isinstance(row, Mapping) else row
        normalized = normalize_external_id(raw)
        if normalized is not None:
            ids.append(normalized)
    return ids


def _case_slug(payload: Mapping[str, Any], external_id: str) -> str:
    details = payload.get("caseDetails")
    if isinstance(details, list):
        for detail in details:
            if isinstance(detail, Mapping):
                suffix = _optional_text(detail.get("seoSuffixUrl"))
                if suffix:
                    return slugify(suffix) or external_id
    return external_id


def _case_title(payload: Mapping[str, Any], external_id: str, procedure_names: list[str]) -> str:
    title = _optional_text(payload.get("title"))
    if title:
        return title
    if procedure_names:
        return f"{' + '.join(procedure_names)} #{external_id}"
    return f"Case #{external_id}"


def _procedure_names(payload: Mapping[str, Any]) -> list[str]:
    names: list[str] = []
    for key in ("procedures", "procedureDetails"):
        nodes = payload.get(key)
        if not isinstance(nodes, list):
            continue
        for node in nodes:
            if isinstance(node, Mapping):
                name = _optional_text(node.get("name"))
                if name and name not in names:
                    names.append(name)
    return names


def _media_from_photo(photo: Mapping[str, Any], kind: str) -> MediaRef | None:
    url = _optional_text(photo.get("url"))
    if not url:
        return None
    width = _as_int(photo.get("width"), 0)
    height = _as_int(photo.get("height"), 0)
    return MediaRef(
        url=url,
        kind=kind,
        caption=_optional_text(photo.get("caption")),
        alt=_optional_text(photo.get("alt")),
        width=width or None,
        height=height or None,
    )


_FLAT_PHOTO_FIELDS = (
    ("beforeLocationUrl", "before"),
    ("afterLocationUrl1", "after"),
    ("postProcessedImageLocation", "processed"),
    ("highResPostProcessedImageLocation", "processed_high_res"),
)


def map_media(photo_sets: Any) -> tuple[MediaRef, ...]:
    """
    Collect media references from ``photoSets``.

    A set either nests ``photos`` under a ``type`` or carries flat location
    fields; both shapes are accepted. Duplicate URLs are dropped.
    """

    if not isinstance(photo_sets, list):
        return ()

    media: list[MediaRef] = []
    seen: set[str] = set()

    def _append(ref: MediaRef | None) -> None:
        if ref is not None and ref.url not in seen:
            seen.add(ref.url)
            media.append(ref)

    for photo_set in photo_sets:
        if not isinstance(photo_set, Mapping):
            continue
        kind = _optional_text(photo_set.get("type")) or "photo"
        photos = photo_set.get("photos")
        if isinstance(photos, list):
            for photo in photos:
                if isinstance(photo, Mapping):
                    _append(_media_from_photo(photo, kind))
        alt = _optional_text(photo_set.get("seoAltText"))
        for field_name, flat_kind in _FLAT_PHOTO_FIELDS:
            url = _optional_text(photo_set.get(field_name))
            if url:
                _append(MediaRef(url=url, kind=flat_kind, alt=alt))
    return tuple(media)


def map_case(payload: Mapping[str, Any], *, procedure_ids: Iterable[str] = ()) -> Case:
    """
    Build a Case from a case-detail payload.

    ``procedure_ids`` are the manifest's sightings for this case; they are
    merged with any ``procedureIds`` the payload itself carries.
    """

    external_id = normalize_external_id(payload.get("id"))
    if external_id is None:
        raise CatalogMappingError("case payload has no id.")

    merged: list[str] = []
    upstream_ids = payload.get("procedureIds")
    for value in list(procedure_ids) + (list(upstream_ids) if isinstance(upstream_ids, list) else []):
        normalized = normalize_external_id(value)
        if normalized is not None and normalized not in merged:
            merged.append(normalized)

    raw_payload = dict(payload)
    return Case(
        external_id=external_id,
        procedure_ids=tuple(merged),
        title=_case_title(payload, external_id, _procedure_names(payload)),
        slug=_case_slug(payload, external_id),
        is_draft=_as_bool(payload.get("draft", False)),
        media=map_media(payload.get("photoSets")),
        raw_payload=raw_payload,
        content_hash=compute_content_hash({"payload": raw_payload, "procedure_ids": merged}),
    )
