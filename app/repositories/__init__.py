"""
app/repositories package marker.
"""

from app.repositories.catalog_repository import CatalogRepository
from app.repositories.sync_state_repository import SyncStateRepository

__all__ = [
    "CatalogRepository",
    "SyncStateRepository",
]
