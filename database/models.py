"""
SQLAlchemy ORM models for the CV portal service
All entities are stored as versioned JSON documents grouped by collection
"""

from datetime import datetime
from typing import Dict, Any
from sqlalchemy import String, Integer, DateTime, JSON, Index
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from database.connection import Base

# JSONB on PostgreSQL, plain JSON elsewhere
DocumentJSON = JSON().with_variant(JSONB(), "postgresql")


class StoredDocument(Base):
    """A single document in a named collection.

    `version` increases by one on every write and backs compare-and-swap updates.
    """
    __tablename__ = 'portal_documents'

    collection: Mapped[str] = mapped_column(String(64), primary_key=True)
    doc_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    data: Mapped[Dict[str, Any]] = mapped_column(DocumentJSON, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.current_timestamp())
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.current_timestamp(), onupdate=func.current_timestamp())

    __table_args__ = (
        Index('idx_portal_documents_collection', 'collection'),
    )

    def __repr__(self):
        return f"<StoredDocument(collection='{self.collection}', doc_id='{self.doc_id}', version={self.version})>"
