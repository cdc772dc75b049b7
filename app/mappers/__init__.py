"""
app/mappers package marker.
"""

from app.mappers.catalog_mapper import (
    CatalogMappingError,
    extract_listing_ids,
    map_case,
    map_media,
    map_taxonomy,
    normalize_external_id,
    slugify,
)

__all__ = [
    "CatalogMappingError",
    "extract_listing_ids",
    "map_case",
    "map_media",
    "map_taxonomy",
    "normalize_external_id",
    "slugify",
]
