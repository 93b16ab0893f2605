"""
SQLAlchemy 2.x models for the Charter Commerce Engine.
Entities are stored as JSON documents keyed by (collection, id) with a
version counter used for optimistic concurrency.
"""

from __future__ import annotations  # Required for Python 3.14 compatibility

import uuid
from datetime import datetime
from typing import Optional

import pytz
from sqlalchemy import String, Integer, DateTime, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column, DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all models using SQLAlchemy 2.0 declarative style."""
    pass


# ==================== UTILITY FUNCTIONS ====================

def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(pytz.utc)


# ==================== DOCUMENT MODEL ====================

class Document(Base):
    """One document in a named collection (quoteRequests, quotes, bookings, ...)."""
    __tablename__ = "documents"

    collection: Mapped[str] = mapped_column(String(64), primary_key=True)
    id: Mapped[str] = mapped_column(String(255), primary_key=True, default=generate_uuid)
    data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index('idx_documents_collection', 'collection'),
    )
