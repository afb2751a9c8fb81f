"""
Database models for the relational dataset catalog.

One row per relational-backed dataset; the generated schema is stored as
a JSON blob.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import BigInteger, DateTime, Index, Integer, JSON, String, Text  # type: ignore
from sqlalchemy.dialects import postgresql  # type: ignore
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column  # type: ignore

# JSONB on PostgreSQL, plain JSON elsewhere
JsonBlob = JSON().with_variant(postgresql.JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class DatasetCatalogRecord(Base):
    """
    Catalog entry for a dataset whose data lives in a relational table.

    ``dataset_id`` is the public identifier; ``id`` is a surrogate key.
    """
    __tablename__ = "dataset_catalog"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    dataset_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    original_name: Mapped[str] = mapped_column(String(500), nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    storage: Mapped[str] = mapped_column(String(50), nullable=False)
    record_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    metadata_json: Mapped[Optional[dict]] = mapped_column("metadata", JsonBlob, nullable=True)
    dataset_schema: Mapped[Optional[dict]] = mapped_column(JsonBlob, nullable=True)
    tags: Mapped[Optional[List[str]]] = mapped_column(JsonBlob, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("idx_dataset_catalog_dataset_id", "dataset_id"),
        Index("idx_dataset_catalog_category", "category"),
        Index("idx_dataset_catalog_storage", "storage"),
        Index("idx_dataset_catalog_created_at", "created_at"),
        Index("idx_dataset_catalog_mime_type", "mime_type"),
    )

    def __repr__(self):
        return f"<DatasetCatalogRecord(dataset_id={self.dataset_id}, name={self.original_name})>"
