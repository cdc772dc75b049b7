"""
app/connectors/response_cache.py

Cache policy and persisted response cache owned by the catalog client.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any

from db.repositories.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "cache:"


@dataclass(frozen=True)
class CachePolicy:
    """
    ``ttl_seconds=None`` means the request always goes to the network.
    """

    ttl_seconds: int | None = None

    @classmethod
    def no_cache(cls) -> CachePolicy:
        return cls(ttl_seconds=None)

    @classmethod
    def ttl(cls, seconds: int) -> CachePolicy:
        if seconds <= 0:
            return cls.no_cache()
        return cls(ttl_seconds=int(seconds))

    @classmethod
    def parse(cls, value: str) -> CachePolicy:
        """
        Parse ``"no-cache"`` or ``"ttl=N"``.
        """

        normalized = value.strip().lower()
        if normalized in {"no-cache", "none", ""}:
            return cls.no_cache()
        if normalized.startswith("ttl="):
            try:
                return cls.ttl(int(normalized[len("ttl=") :]))
            except ValueError as exc:
                raise ValueError(f"Invalid cache policy TTL: {value!r}") from exc
        raise ValueError(f"Unknown cache policy: {value!r}")

    @property
    def enabled(self) -> bool:
        return self.ttl_seconds is not None

    def __str__(self) -> str:
        return "no-cache" if self.ttl_seconds is None else f"ttl={self.ttl_seconds}"


def build_cache_key(method: str, endpoint: str, body: dict[str, Any] | None) -> str:
    """
    Canonical key for one request: identical (method, endpoint, body) triples
    map to the same key regardless of dict ordering.
    """

    canonical = json.dumps(
        {"method": method.upper(), "endpoint": endpoint, "body": body or {}},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f"{CACHE_KEY_PREFIX}{digest}"


class ResponseCache:
    """
    Thin wrapper over the key-value store holding decoded response bodies.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    def get(self, key: str) -> Any | None:
        entry = self._store.get(key)
        if not isinstance(entry, dict) or "payload" not in entry:
            return None
        return entry["payload"]

    def put(self, key: str, payload: Any, policy: CachePolicy) -> None:
        if not policy.enabled:
            return
        self._store.set(key, {"payload": payload}, ttl_seconds=policy.ttl_seconds)

    def clear(self) -> int:
        removed = self._store.delete_prefix(CACHE_KEY_PREFIX)
        logger.info("Response cache cleared entries=%s", removed)
        return removed
