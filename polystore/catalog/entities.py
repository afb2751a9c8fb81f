"""
Dataset catalog entry: the permanent metadata record for one dataset.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from polystore.ingest.backend_selector import StorageDecision
from polystore.ingest.schema_generator import GeneratedSchema

# Only these fields may change after creation
UPDATABLE_FIELDS = ("tags", "description", "metadata")

CATEGORY_JSON = "json"


def new_dataset_id() -> str:
    return str(uuid4())


def data_collection_name(dataset_id: str) -> str:
    """Per-dataset collection name for document-backed data."""
    return f"dataset_{dataset_id}"


@dataclass
class DatasetCatalogEntry:
    """
    Catalog metadata for one dataset.

    ``storage`` always names the store that actually holds the data and the
    catalog entry itself. It and ``schema`` never change after creation.
    """
    id: str
    original_name: str
    storage: StorageDecision
    mime_type: str = "application/json"
    category: str = CATEGORY_JSON
    file_size: int = 0
    record_count: int = 0
    schema: Optional[GeneratedSchema] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def entity_name(self) -> Optional[str]:
        """Table (relational) or collection (document) that holds the data."""
        if self.storage == StorageDecision.DOCUMENT:
            return data_collection_name(self.id)
        return self.schema.entity_name if self.schema else None

    @property
    def dataset_name(self) -> str:
        return self.metadata.get("datasetName") or self.original_name

    def to_dict(self) -> Dict[str, Any]:
        """JSON-compatible representation (timestamps as ISO strings)."""
        return {
            "id": self.id,
            "originalName": self.original_name,
            "storage": self.storage.value,
            "mimeType": self.mime_type,
            "category": self.category,
            "fileSize": self.file_size,
            "recordCount": self.record_count,
            "schema": self.schema.to_dict() if self.schema else None,
            "metadata": self.metadata,
            "tags": list(self.tags),
            "description": self.description,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DatasetCatalogEntry":
        schema = data.get("schema")
        return cls(
            id=data["id"],
            original_name=data["originalName"],
            storage=StorageDecision(data["storage"]),
            mime_type=data.get("mimeType", "application/json"),
            category=data.get("category", CATEGORY_JSON),
            file_size=data.get("fileSize", 0),
            record_count=data.get("recordCount", 0),
            schema=GeneratedSchema.from_dict(schema) if schema else None,
            metadata=data.get("metadata") or {},
            tags=list(data.get("tags") or []),
            description=data.get("description"),
            created_at=_parse_datetime(data.get("createdAt")),
            updated_at=_parse_datetime(data.get("updatedAt")),
        )


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)
