"""Ingest orchestrator: JSON payload to stored, cataloged dataset."""

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from polystore.catalog.entities import CATEGORY_JSON, DatasetCatalogEntry, new_dataset_id
from polystore.catalog.service import CatalogService
from polystore.common.exceptions import (
    IngestError,
    InputError,
    SchemaGenerationError,
    StoreUnavailableError,
    StoreWriteError,
)
from polystore.common.logging_config import PerformanceTracker, ingest_context
from polystore.common.metrics import (
    ingest_fallbacks_total,
    ingest_latency_seconds,
    ingest_requests_total,
)
from polystore.common.resilience import with_fallback_async
from polystore.config.settings import Settings, get_settings
from polystore.ingest.backend_selector import StorageDecision, explain_selection, select_backend
from polystore.ingest.profiler import profile
from polystore.ingest.schema_generator import GeneratedSchema, SchemaGenerator
from polystore.ingest.validator import derive_dataset_name, normalize_payload

logger = logging.getLogger(__name__)

SAMPLE_PREVIEW_SIZE = 3


class IngestStage(str, Enum):
    PROFILED = "profiled"
    BACKEND_SELECTED = "backend-selected"
    SCHEMA_GENERATED = "schema-generated"
    DATA_WRITTEN = "data-written"
    CATALOGED = "cataloged"


@dataclass
class IngestResult:
    """Outcome of a successful ingest."""
    entry: DatasetCatalogEntry
    selected_storage: StorageDecision
    used_fallback: bool = False
    stages: List[IngestStage] = field(default_factory=list)
    profile_summary: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dataset": self.entry.to_dict(),
            "selectedStorage": self.selected_storage.value,
            "storage": self.entry.storage.value,
            "usedFallback": self.used_fallback,
            "stages": [s.value for s in self.stages],
            "profile": self.profile_summary,
        }


class IngestOrchestrator:
    """
    Runs one JSON payload through profiling, backend selection, schema
    generation, the data write, and cataloging, strictly in that order.

    A relational write failure falls back to the document store; the
    catalog entry always records the store that actually holds the data.
    """

    def __init__(
        self,
        catalog: CatalogService,
        settings: Optional[Settings] = None,
        schema_generator: Optional[SchemaGenerator] = None,
    ):
        self.catalog = catalog
        self.settings = settings or get_settings()
        self.schema_generator = schema_generator or SchemaGenerator()

    async def ingest(
        self,
        original_name: str,
        media_type: str,
        data: Any,
        dataset_name: Optional[str] = None,
        size: Optional[int] = None,
        tags: Optional[List[str]] = None,
        description: Optional[str] = None,
    ) -> IngestResult:
        """
        Ingest a parsed JSON payload.

        Args:
            original_name: Uploaded file name
            media_type: Declared media type
            data: Parsed JSON (object or array of objects)
            dataset_name: Name used for the table; derived from ``original_name`` if omitted
            size: Payload size in bytes; computed from ``data`` if omitted
            tags: Initial tags
            description: Initial description

        Returns:
            IngestResult

        Raises:
            IngestError: Tagged with the failing stage
        """
        dataset_id = new_dataset_id()
        started = time.perf_counter()
        stages: List[IngestStage] = []
        storage_label = "none"

        with ingest_context(dataset_id) as ingest_id:
            try:
                with PerformanceTracker("profile", logger):
                    try:
                        records = normalize_payload(data)
                        type_profile = profile(
                            records[:self.settings.schema_sample_size],
                            max_depth=self.settings.schema_max_depth,
                        )
                    except InputError as e:
                        raise IngestError("profiling", e) from e
                stages.append(IngestStage.PROFILED)

                decision = select_backend(type_profile)
                logger.info(explain_selection(type_profile))
                stages.append(IngestStage.BACKEND_SELECTED)

                name = dataset_name or derive_dataset_name(original_name)
                with PerformanceTracker("schema", logger):
                    try:
                        schema = self.schema_generator.generate(name, dataset_id, type_profile)
                    except SchemaGenerationError as e:
                        raise IngestError("schema", e) from e
                stages.append(IngestStage.SCHEMA_GENERATED)

                with PerformanceTracker("write", logger, storage=decision.value):
                    (storage, record_count), used_fallback = await self._write(
                        decision, schema, dataset_id, records)
                storage_label = storage.value
                stages.append(IngestStage.DATA_WRITTEN)

                entry = DatasetCatalogEntry(
                    id=dataset_id,
                    original_name=original_name,
                    storage=storage,
                    mime_type=media_type,
                    category=CATEGORY_JSON,
                    file_size=size if size is not None else len(json.dumps(data, default=str).encode("utf-8")),
                    record_count=record_count,
                    schema=schema,
                    metadata={
                        "datasetName": name,
                        "selectedStorage": decision.value,
                        "usedFallback": used_fallback,
                        "ingestId": ingest_id,
                        "fieldCount": len(type_profile),
                    },
                    tags=list(tags or []),
                    description=description,
                )
                with PerformanceTracker("catalog", logger):
                    try:
                        entry = await self.catalog.create(entry)
                    except (StoreWriteError, StoreUnavailableError) as e:
                        await self._discard_data(entry)
                        raise IngestError("catalog", e) from e
                stages.append(IngestStage.CATALOGED)

                ingest_requests_total.labels(storage=storage_label, status="success").inc()
                logger.info(
                    f"Ingested {record_count} records from {original_name} into {storage.value} store",
                    extra={"extra_fields": {"used_fallback": used_fallback}},
                )

                return IngestResult(
                    entry=entry,
                    selected_storage=decision,
                    used_fallback=used_fallback,
                    stages=stages,
                    profile_summary={
                        "fields": schema.fields,
                        "sampleRecords": records[:SAMPLE_PREVIEW_SIZE],
                        "recordCount": len(records),
                    },
                )
            except IngestError as e:
                ingest_requests_total.labels(storage=storage_label, status="failure").inc()
                logger.error(f"Ingest of {original_name} failed at stage '{e.stage}': {e.cause}")
                raise
            finally:
                ingest_latency_seconds.observe(time.perf_counter() - started)

    async def _write(
        self,
        decision: StorageDecision,
        schema: GeneratedSchema,
        dataset_id: str,
        records: List[Dict[str, Any]],
    ) -> Tuple[Tuple[StorageDecision, int], bool]:
        """Write records; returns ((storage, count), used_fallback)."""
        try:
            if decision == StorageDecision.DOCUMENT:
                return await self._write_document(schema, dataset_id, records), False

            if not self.settings.relational_fallback_enabled:
                return await self._write_relational(schema, dataset_id, records), False

            result, used_fallback = await with_fallback_async(
                self._write_relational,
                self._write_document,
                schema,
                dataset_id,
                records,
                fallback_on=(StoreWriteError,),
            )
        except StoreWriteError as e:
            raise IngestError("write", e) from e

        if used_fallback:
            ingest_fallbacks_total.inc()
            logger.warning(f"Dataset {dataset_id} degraded to document storage")
        return result, used_fallback

    async def _write_relational(self, schema, dataset_id, records) -> Tuple[StorageDecision, int]:
        count = await self.catalog.store_relational_records(schema, records)
        return StorageDecision.RELATIONAL, count

    async def _write_document(self, schema, dataset_id, records) -> Tuple[StorageDecision, int]:
        count = await self.catalog.store_document_records(dataset_id, records)
        return StorageDecision.DOCUMENT, count

    async def _discard_data(self, entry: DatasetCatalogEntry) -> None:
        try:
            await self.catalog.drop_data(entry)
        except StoreWriteError as e:
            logger.error(f"Could not drop data of uncataloged dataset {entry.id}: {e}")
