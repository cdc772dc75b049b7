"""
app/connectors package marker.
"""

from app.connectors.base import ApiError, ApiErrorKind, ApiResponse, BaseApiClient, EndpointMetrics
from app.connectors.catalog_client import CatalogApiClient
from app.connectors.response_cache import CachePolicy, ResponseCache, build_cache_key

__all__ = [
    "ApiError",
    "ApiErrorKind",
    "ApiResponse",
    "BaseApiClient",
    "CachePolicy",
    "CatalogApiClient",
    "EndpointMetrics",
    "ResponseCache",
    "build_cache_key",
]
