"""
Repository-layer exceptions for persistent storage.
"""

from __future__ import annotations


class StoreError(Exception):
    """Raised when the key-value store cannot complete an operation."""
