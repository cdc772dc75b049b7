"""
db/models/kv_entry.py

Key-value record backing every persisted sync artefact.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base, TimestampMixin

JSONValue = JSON().with_variant(JSONB(), "postgresql")


class KeyValueEntry(Base, TimestampMixin):
    __tablename__ = "kv_entries"

    key: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
        comment="Namespaced key, e.g. procedure:123 or checkpoint:<run_id>:cases",
    )
    value: Mapped[Any] = mapped_column(
        JSONValue,
        nullable=False,
    )
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Optional expiry; expired rows are treated as absent",
    )

    __table_args__ = (
        Index("ix_kv_entries_expires_at", "expires_at"),
    )
