"""SQLAlchemy models backing the whole-collection store."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class CollectionRow(Base):
    """One persisted collection, stored as a single JSON array."""

    __tablename__ = "collections"

    name = Column(String(64), primary_key=True)
    payload = Column(Text, nullable=False, default="[]")
    record_count = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
