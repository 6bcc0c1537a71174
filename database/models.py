"""
SQLAlchemy ORM models backing the key/value store.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


class OptionRecord(Base):
    """One persisted key.  Options, module flags and credentials all live here."""

    __tablename__ = "sitekit_options"

    key = Column(String(255), primary_key=True)
    value = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=True)
    version = Column(Integer, nullable=False, default=1)
    # Tombstone: the key reads as absent but keeps its last version.
    deleted = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
