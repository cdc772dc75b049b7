"""
Key-value storage backends for sync state, catalog records, and cached responses.
"""

from __future__ import annotations

import copy
import threading
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from db.models.kv_entry import KeyValueEntry
from db.repositories.errors import StoreError


class KeyValueStore(Protocol):
    """
    Minimal persistence contract used by the sync core.

    Values must be JSON-serializable. ``ttl_seconds`` makes an entry expire;
    expired entries behave exactly like missing ones.
    """

    def get(self, key: str) -> Any | None:
        ...

    def set(self, key: str, value: Any, *, ttl_seconds: float | None = None) -> None:
        ...

    def set_if_absent(self, key: str, value: Any, *, ttl_seconds: float | None = None) -> bool:
        ...

    def delete(self, key: str) -> bool:
        ...

    def delete_prefix(self, prefix: str) -> int:
        ...

    def keys_with_prefix(self, prefix: str) -> list[str]:
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class InMemoryKeyValueStore:
    """
    Process-local store with the same semantics as the database backend.

    Used by tests and dry runs. Values are deep-copied on the way in and out
    so callers can never mutate stored state by accident.
    """

    def __init__(self, *, now: Callable[[], datetime] = _utcnow) -> None:
        self._now = now
        self._entries: dict[str, tuple[Any, datetime | None]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and expires_at <= self._now():
                del self._entries[key]
                return None
            return copy.deepcopy(value)

    def set(self, key: str, value: Any, *, ttl_seconds: float | None = None) -> None:
        expires_at = None
        if ttl_seconds is not None:
            expires_at = self._now() + timedelta(seconds=ttl_seconds)
        with self._lock:
            self._entries[key] = (copy.deepcopy(value), expires_at)

    def set_if_absent(self, key: str, value: Any, *, ttl_seconds: float | None = None) -> bool:
        now = self._now()
        expires_at = now + timedelta(seconds=ttl_seconds) if ttl_seconds is not None else None
        with self._lock:
            current = self._entries.get(key)
            if current is not None and (current[1] is None or current[1] > now):
                return False
            self._entries[key] = (copy.deepcopy(value), expires_at)
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def keys_with_prefix(self, prefix: str) -> list[str]:
        now = self._now()
        with self._lock:
            return sorted(
                key
                for key, (_, expires_at) in self._entries.items()
                if key.startswith(prefix) and (expires_at is None or expires_at > now)
            )


class SQLAlchemyKeyValueStore:
    """
    Store backed by the ``kv_entries`` table.

    Every operation runs in its own short transaction so that a checkpoint
    written by one batch is durable before the next batch starts.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._now = now

    def get(self, key: str) -> Any | None:
        try:
            with self._session_factory() as session, session.begin():
                entry = session.get(KeyValueEntry, key)
                if entry is None:
                    return None
                if entry.expires_at is not None and _as_aware(entry.expires_at) <= self._now():
                    session.delete(entry)
                    return None
                return entry.value
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to read key '{key}'.") from exc

    def set(self, key: str, value: Any, *, ttl_seconds: float | None = None) -> None:
        expires_at = None
        if ttl_seconds is not None:
            expires_at = self._now() + timedelta(seconds=ttl_seconds)
        try:
            with self._session_factory() as session, session.begin():
                entry = session.get(KeyValueEntry, key)
                if entry is None:
                    session.add(KeyValueEntry(key=key, value=value, expires_at=expires_at))
                else:
                    entry.value = value
                    entry.expires_at = expires_at
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to write key '{key}'.") from exc

    def set_if_absent(self, key: str, value: Any, *, ttl_seconds: float | None = None) -> bool:
        """
        Insert ``key`` only when no live entry exists. Returns ``True`` on insert.
        """

        now = self._now()
        expires_at = now + timedelta(seconds=ttl_seconds) if ttl_seconds is not None else None
        try:
            with self._session_factory() as session, session.begin():
                entry = session.get(KeyValueEntry, key, with_for_update=True)
                if entry is None:
                    session.add(KeyValueEntry(key=key, value=value, expires_at=expires_at))
                    session.flush()
                    return True
                if entry.expires_at is not None and _as_aware(entry.expires_at) <= now:
                    entry.value = value
                    entry.expires_at = expires_at
                    return True
                return False
        except IntegrityError:
            return False
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to claim key '{key}'.") from exc

    def delete(self, key: str) -> bool:
        try:
            with self._session_factory() as session, session.begin():
                result = session.execute(delete(KeyValueEntry).where(KeyValueEntry.key == key))
                return bool(result.rowcount)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to delete key '{key}'.") from exc

    def delete_prefix(self, prefix: str) -> int:
        try:
            with self._session_factory() as session, session.begin():
                result = session.execute(
                    delete(KeyValueEntry).where(KeyValueEntry.key.startswith(prefix, autoescape=True))
                )
                return int(result.rowcount or 0)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to delete keys with prefix '{prefix}'.") from exc

    def keys_with_prefix(self, prefix: str) -> list[str]:
        now = self._now()
        try:
            with self._session_factory() as session:
                rows = session.execute(
                    select(KeyValueEntry.key, KeyValueEntry.expires_at)
                    .where(KeyValueEntry.key.startswith(prefix, autoescape=True))
                    .order_by(KeyValueEntry.key)
                ).all()
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to list keys with prefix '{prefix}'.") from exc
        return [row.key for row in rows if row.expires_at is None or _as_aware(row.expires_at) > now]
