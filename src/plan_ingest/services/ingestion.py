from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import lru_cache
from typing import Any, Callable, Dict, Optional, Tuple

from plan_ingest.config import IngestionOptions, ServiceSettings
from plan_ingest.errors import IngestionError, IngestionInProgressError
from plan_ingest.fetch import SourceFetcher
from plan_ingest.ingest.extractors import check_cancelled
from plan_ingest.ingest.models import IngestWarning, PlanSetGroup, ProjectMeta, SheetIndexEntry
from plan_ingest.ingest.pipeline import IngestionResult, IngestPipeline
from plan_ingest.logging_config import AUDIT_LOGGER_NAME, bind_document
from plan_ingest.repository import (
    InMemoryPlanRepository,
    PersistOutcome,
    PlanRepository,
    build_chunk_rows,
    build_sheet_rows,
)
from plan_ingest.storage import ImageStore, build_image_store
from plan_ingest.telemetry import emit_exception, emit_ingest_event, emit_stage_event

LOGGER = logging.getLogger(__name__)
AUDIT_LOGGER = logging.getLogger(AUDIT_LOGGER_NAME)

PipelineFactory = Callable[[IngestionOptions], IngestPipeline]


class ProcessingStage(str, Enum):
    QUEUED = "queued"
    DOWNLOADING = "downloading"
    EXTRACTING = "extracting"
    INDEXING = "indexing"
    CHUNKING = "chunking"
    COMPLETED = "completed"
    FAILED = "failed"


_STAGE_PROGRESS = {
    ProcessingStage.QUEUED: 0,
    ProcessingStage.DOWNLOADING: 10,
    ProcessingStage.EXTRACTING: 25,
    ProcessingStage.INDEXING: 60,
    ProcessingStage.CHUNKING: 80,
    ProcessingStage.COMPLETED: 100,
}

_STAGE_STEPS = {
    ProcessingStage.QUEUED: "Waiting to start",
    ProcessingStage.DOWNLOADING: "Downloading document",
    ProcessingStage.EXTRACTING: "Extracting page text and images",
    ProcessingStage.INDEXING: "Building sheet index",
    ProcessingStage.CHUNKING: "Packing chunks",
    ProcessingStage.COMPLETED: "Completed",
    ProcessingStage.FAILED: "Failed",
}


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(slots=True)
class ProcessingStatus:
    """Mutable progress record for one document; read through :meth:`to_dict`."""

    document_id: str
    stage: ProcessingStage = ProcessingStage.QUEUED
    progress: int = 0
    current_step: str = _STAGE_STEPS[ProcessingStage.QUEUED]
    error: Optional[Dict[str, str]] = None
    started_at: str = field(default_factory=_utcnow)
    updated_at: str = field(default_factory=_utcnow)
    completed_at: Optional[str] = None
    stats: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["stage"] = self.stage.value
        return payload


@dataclass(frozen=True, slots=True)
class ChunkPreview:
    chunk_id: str
    chunk_index: int
    page_start: int
    page_end: int
    token_count: int
    sheet_count: int


@dataclass(frozen=True, slots=True)
class IngestionSummary:
    """Structured result returned from :meth:`PlanIngestionService.ingest`."""

    document_id: str
    total_pages: int
    total_chunks: int
    sheet_index_count: int
    images_extracted: int
    average_chunk_size_tokens: float
    processing_time_ms: float
    reprocessed_chunks: int
    sheet_index: Tuple[SheetIndexEntry, ...]
    plan_set_groups: Tuple[PlanSetGroup, ...]
    chunk_preview: Tuple[ChunkPreview, ...]
    project_meta: ProjectMeta
    warnings: Tuple[IngestWarning, ...]

    @classmethod
    def from_result(
        cls, result: IngestionResult, outcome: PersistOutcome, processing_time_ms: float
    ) -> "IngestionSummary":
        stats = result.statistics
        return cls(
            document_id=result.document_id,
            total_pages=stats.total_pages,
            total_chunks=stats.total_chunks,
            sheet_index_count=stats.sheet_index_count,
            images_extracted=stats.images_extracted,
            average_chunk_size_tokens=stats.average_chunk_size_tokens,
            processing_time_ms=round(processing_time_ms, 3),
            reprocessed_chunks=outcome.reprocessed_chunks,
            sheet_index=result.sheet_index,
            plan_set_groups=result.plan_set_groups,
            chunk_preview=tuple(
                ChunkPreview(
                    chunk_id=chunk.chunk_id,
                    chunk_index=chunk.chunk_index,
                    page_start=chunk.page_range.start,
                    page_end=chunk.page_range.end,
                    token_count=chunk.token_count,
                    sheet_count=len(chunk.sheet_index_subset),
                )
                for chunk in result.chunks
            ),
            project_meta=result.project_meta,
            warnings=result.warnings,
        )

    def stats(self) -> Dict[str, Any]:
        return {
            "total_pages": self.total_pages,
            "total_chunks": self.total_chunks,
            "sheet_index_count": self.sheet_index_count,
            "images_extracted": self.images_extracted,
            "average_chunk_size_tokens": self.average_chunk_size_tokens,
            "processing_time_ms": self.processing_time_ms,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_id": self.document_id,
            **self.stats(),
            "reprocessed_chunks": self.reprocessed_chunks,
            "sheet_index": [entry.to_dict() for entry in self.sheet_index],
            "plan_set_groups": [group.to_dict() for group in self.plan_set_groups],
            "chunk_preview": [asdict(preview) for preview in self.chunk_preview],
            "project_meta": self.project_meta.to_dict(),
            "warnings": [asdict(warning) for warning in self.warnings],
        }


class PlanIngestionService:
    """Runs fetch, pipeline and persistence for plan documents and tracks their progress."""

    def __init__(
        self,
        *,
        settings: ServiceSettings | None = None,
        repository: PlanRepository | None = None,
        fetcher: SourceFetcher | None = None,
        image_store: ImageStore | None = None,
        pipeline_factory: PipelineFactory | None = None,
    ) -> None:
        self.settings = settings or ServiceSettings.from_env()
        self.repository: PlanRepository = repository or InMemoryPlanRepository()
        self.fetcher = fetcher or SourceFetcher(self.settings)
        self.image_store = image_store or build_image_store(self.settings.image_dir)
        self._pipeline_factory = pipeline_factory or self._default_pipeline
        self._cancel_events: Dict[str, threading.Event] = {}
        self._statuses: Dict[str, ProcessingStatus] = {}
        self._lock = threading.Lock()

    async def ingest(
        self,
        document_id: str,
        file_path: str,
        *,
        file_name: str | None = None,
        mime_type: str | None = None,
        options: IngestionOptions | None = None,
    ) -> IngestionSummary:
        """Download the document behind ``file_path`` and ingest it."""

        cancel_event = self._begin(document_id)
        try:
            self._set_stage(document_id, ProcessingStage.DOWNLOADING)
            fetched = await self.fetcher.fetch(file_path)
            check_cancelled(cancel_event)
            return await self._process(
                document_id,
                fetched.data,
                file_name=file_name or fetched.file_name,
                mime_type=mime_type or fetched.content_type,
                options=options,
                cancel_event=cancel_event,
            )
        except Exception as error:
            self._fail(document_id, error)
            raise
        finally:
            self._release(document_id)

    async def ingest_bytes(
        self,
        document_id: str,
        data: bytes,
        *,
        file_name: str,
        mime_type: str | None = None,
        options: IngestionOptions | None = None,
    ) -> IngestionSummary:
        """Ingest document bytes that are already in memory (uploads)."""

        cancel_event = self._begin(document_id)
        try:
            return await self._process(
                document_id,
                data,
                file_name=file_name,
                mime_type=mime_type,
                options=options,
                cancel_event=cancel_event,
            )
        except Exception as error:
            self._fail(document_id, error)
            raise
        finally:
            self._release(document_id)

    def cancel(self, document_id: str) -> bool:
        """Raise the cancellation signal of a running job; ``False`` when none runs."""

        with self._lock:
            event = self._cancel_events.get(document_id)
        if event is None:
            return False
        event.set()
        LOGGER.info("Cancellation requested for %s", document_id)
        return True

    def get_status(self, document_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            status = self._statuses.get(document_id)
            return status.to_dict() if status else None

    async def _process(
        self,
        document_id: str,
        data: bytes,
        *,
        file_name: str,
        mime_type: str | None,
        options: IngestionOptions | None,
        cancel_event: threading.Event,
    ) -> IngestionSummary:
        with bind_document(document_id):
            return await self._run_pipeline(
                document_id,
                data,
                file_name=file_name,
                mime_type=mime_type,
                options=options,
                cancel_event=cancel_event,
            )

    async def _run_pipeline(
        self,
        document_id: str,
        data: bytes,
        *,
        file_name: str,
        mime_type: str | None,
        options: IngestionOptions | None,
        cancel_event: threading.Event,
    ) -> IngestionSummary:
        start_time = time.perf_counter()
        emit_ingest_event(
            "ingest.document.start",
            document_id=document_id,
            file_name=file_name,
            size_bytes=len(data),
        )
        pipeline = self._pipeline_factory(options or IngestionOptions())
        try:
            result = await asyncio.to_thread(
                pipeline.run,
                data,
                document_id=document_id,
                file_name=file_name,
                mime_type=mime_type,
                cancel_event=cancel_event,
                on_stage=lambda stage: self._set_stage(document_id, ProcessingStage(stage)),
            )
            check_cancelled(cancel_event)
            outcome = self.repository.replace_document(
                document_id,
                build_sheet_rows(document_id, result.sheet_index),
                build_chunk_rows(document_id, result.chunks),
            )
        except Exception as error:
            emit_exception(module=f"{__name__}.pipeline", error=error, document_id=document_id)
            pipeline.discard_images(document_id)
            raise

        duration_ms = (time.perf_counter() - start_time) * 1000.0
        summary = IngestionSummary.from_result(result, outcome, duration_ms)
        self._complete(document_id, summary)
        emit_ingest_event(
            "ingest.document.complete",
            document_id=document_id,
            file_name=file_name,
            size_bytes=len(data),
            duration_ms=duration_ms,
            pages=summary.total_pages,
            chunks=summary.total_chunks,
            images=summary.images_extracted,
            warnings=len(summary.warnings),
        )
        AUDIT_LOGGER.info(
            {
                "event": "ingest",
                "document_id": document_id,
                "file_name": file_name,
                "pages": summary.total_pages,
                "chunks": summary.total_chunks,
                "sheets": summary.sheet_index_count,
                "reprocessed_chunks": summary.reprocessed_chunks,
                "warnings": [warning.code for warning in summary.warnings],
            }
        )
        return summary

    def _default_pipeline(self, options: IngestionOptions) -> IngestPipeline:
        return IngestPipeline(options, self.settings, image_store=self.image_store)

    def _begin(self, document_id: str) -> threading.Event:
        with self._lock:
            if document_id in self._cancel_events:
                raise IngestionInProgressError(f"Document {document_id} is already being ingested")
            event = threading.Event()
            self._cancel_events[document_id] = event
            self._statuses[document_id] = ProcessingStatus(document_id=document_id)
        return event

    def _release(self, document_id: str) -> None:
        with self._lock:
            self._cancel_events.pop(document_id, None)

    def _set_stage(self, document_id: str, stage: ProcessingStage) -> None:
        with self._lock:
            status = self._statuses.get(document_id)
            if status is None:
                return
            status.stage = stage
            status.progress = _STAGE_PROGRESS.get(stage, status.progress)
            status.current_step = _STAGE_STEPS[stage]
            status.updated_at = _utcnow()
            progress = status.progress
        emit_stage_event(document_id, stage.value, progress=progress)

    def _complete(self, document_id: str, summary: IngestionSummary) -> None:
        with self._lock:
            status = self._statuses[document_id]
            status.stage = ProcessingStage.COMPLETED
            status.progress = 100
            status.current_step = _STAGE_STEPS[ProcessingStage.COMPLETED]
            status.updated_at = status.completed_at = _utcnow()
            status.stats = summary.stats()

    def _fail(self, document_id: str, error: Exception) -> None:
        if isinstance(error, IngestionError):
            detail = error.to_dict()
        else:
            detail = {"code": "internal_error", "message": str(error)}
        with self._lock:
            status = self._statuses.get(document_id)
            if status is None:
                return
            status.stage = ProcessingStage.FAILED
            status.current_step = _STAGE_STEPS[ProcessingStage.FAILED]
            status.error = detail
            status.updated_at = status.completed_at = _utcnow()
        LOGGER.warning("Ingestion of %s failed: %s", document_id, detail["message"])


@lru_cache(maxsize=1)
def get_ingestion_service() -> PlanIngestionService:
    """FastAPI dependency returning the shared :class:`PlanIngestionService` instance."""

    return PlanIngestionService()
