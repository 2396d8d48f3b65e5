"""High level ingestion pipeline entry point."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from ..config import IngestionOptions, ServiceSettings
from ..storage import ImageStore
from ..telemetry import traced_duration
from .chunking import ChunkPacker
from .classifier import SheetClassifier
from .extractors import PDFPageExtractor, check_cancelled
from .format_detection import DocumentFormatDetector
from .grouping import disambiguate_sheet_ids, group_plan_sets
from .language import LanguageDetector
from .models import Chunk, IngestWarning, PlanSetGroup, ProjectMeta, SheetIndexEntry
from .project_meta import build_project_meta
from .safeguards import SafeguardAnnotator

LOGGER = logging.getLogger(__name__)

StageCallback = Callable[[str], None]


@dataclass(frozen=True, slots=True)
class IngestStatistics:
    total_pages: int
    total_chunks: int
    sheet_index_count: int
    images_extracted: int
    average_chunk_size_tokens: float
    processing_time_ms: float
    warnings: int


@dataclass(frozen=True, slots=True)
class IngestionResult:
    """Everything one run produced; nothing here is persisted yet."""

    document_id: str
    file_name: str
    sheet_index: Tuple[SheetIndexEntry, ...]
    plan_set_groups: Tuple[PlanSetGroup, ...]
    chunks: Tuple[Chunk, ...]
    project_meta: ProjectMeta
    warnings: Tuple[IngestWarning, ...]
    statistics: IngestStatistics


def page_warnings(
    sheet_index: Sequence[SheetIndexEntry], extraction_warnings: Sequence[IngestWarning] = ()
) -> List[IngestWarning]:
    """Warnings derived from classified pages rather than from extraction.

    Pages whose text extraction already failed are not reported again as
    lacking a text layer.
    """

    failed_pages = {
        warning.page_number for warning in extraction_warnings if warning.code == "text_extraction_failed"
    }
    warnings: List[IngestWarning] = []
    for entry in sheet_index:
        if entry.page_number in failed_pages:
            continue
        if not entry.has_text_layer:
            warnings.append(
                IngestWarning(
                    code="no_text_layer",
                    message=f"Page {entry.page_number} has no extractable text layer",
                    page_number=entry.page_number,
                )
            )
        elif entry.scale is None:
            warnings.append(
                IngestWarning(
                    code="scale_undetermined",
                    message=f"No drawing scale found on page {entry.page_number} ({entry.sheet_id})",
                    page_number=entry.page_number,
                )
            )
    return warnings


class IngestPipeline:
    """Pipeline orchestrating extraction, classification, grouping and chunking."""

    def __init__(
        self,
        options: Optional[IngestionOptions] = None,
        settings: Optional[ServiceSettings] = None,
        *,
        extractor: Optional[PDFPageExtractor] = None,
        classifier: Optional[SheetClassifier] = None,
        annotator: Optional[SafeguardAnnotator] = None,
        image_store: Optional[ImageStore] = None,
        language_detector: Optional[LanguageDetector] = None,
    ) -> None:
        self.options = options or IngestionOptions()
        self.settings = settings or ServiceSettings()
        self.extractor = extractor or PDFPageExtractor(
            max_document_bytes=self.settings.max_document_bytes,
            worker_pool_size=self.settings.worker_pool_size,
            enable_images=self.options.enable_image_extraction,
            image_dpi=self.options.image_dpi,
            image_store=image_store,
        )
        self.classifier = classifier or SheetClassifier()
        self.packer = ChunkPacker(self.options.chunking_config())
        self.annotator = annotator or SafeguardAnnotator(enable_dedupe=self.options.enable_dedupe)
        self.language_detector = language_detector or LanguageDetector()
        self.last_statistics: Optional[IngestStatistics] = None

    def run(
        self,
        data: bytes,
        *,
        document_id: str,
        file_name: str,
        mime_type: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
        on_stage: Optional[StageCallback] = None,
    ) -> IngestionResult:
        """Process a plan set and return its sheet index, groups and chunks."""

        started = time.perf_counter()
        document_format = DocumentFormatDetector.detect(file_name, mime_type, data)
        LOGGER.info("Processing file %s (%s) with id %s", file_name, document_format.value, document_id)

        try:
            return self._run_stages(
                data,
                document_id=document_id,
                file_name=file_name,
                cancel_event=cancel_event,
                notify=on_stage or (lambda stage: None),
                started=started,
            )
        except Exception:
            self.discard_images(document_id)
            raise

    def discard_images(self, document_id: str) -> int:
        """Drop the page images of a run whose results will not be persisted."""

        try:
            removed = self.extractor.discard_images(document_id)
        except OSError as exc:
            LOGGER.warning("Could not discard page images of %s: %s", document_id, exc)
            return 0
        if removed:
            LOGGER.info("Discarded %s page images of %s", removed, document_id)
        return removed

    def _run_stages(
        self,
        data: bytes,
        *,
        document_id: str,
        file_name: str,
        cancel_event: Optional[threading.Event],
        notify: StageCallback,
        started: float,
    ) -> IngestionResult:
        notify("extracting")
        with traced_duration("ingest.extract", logger=LOGGER, document_id=document_id):
            extraction = self.extractor.extract(data, document_id=document_id, cancel_event=cancel_event)
        pages = extraction.pages
        check_cancelled(cancel_event)

        notify("indexing")
        with traced_duration("ingest.classify", logger=LOGGER, document_id=document_id):
            classified = [self.classifier.classify(page, len(pages)) for page in pages]
            sheet_index = disambiguate_sheet_ids(classified)
            plan_set_groups = group_plan_sets(sheet_index)
            project_meta = build_project_meta(
                pages,
                document_id=document_id,
                file_name=file_name,
                language_detector=self.language_detector,
            )
        check_cancelled(cancel_event)

        notify("chunking")
        with traced_duration("ingest.chunk", logger=LOGGER, document_id=document_id):
            packed = self.packer.pack(pages, sheet_index, document_id=document_id)
            chunks = tuple(self.annotator.annotate(chunk) for chunk in packed)
        check_cancelled(cancel_event)

        warnings = sorted(
            [*extraction.warnings, *page_warnings(sheet_index, extraction.warnings)],
            key=lambda warning: warning.page_number or 0,
        )
        statistics = IngestStatistics(
            total_pages=len(pages),
            total_chunks=len(chunks),
            sheet_index_count=len(sheet_index),
            images_extracted=extraction.images_extracted,
            average_chunk_size_tokens=(
                round(sum(chunk.token_count for chunk in chunks) / len(chunks), 1) if chunks else 0.0
            ),
            processing_time_ms=round((time.perf_counter() - started) * 1000.0, 3),
            warnings=len(warnings),
        )
        self.last_statistics = statistics
        LOGGER.info(
            "Generated %s chunks from %s pages for file %s",
            statistics.total_chunks,
            statistics.total_pages,
            file_name,
        )
        return IngestionResult(
            document_id=document_id,
            file_name=file_name,
            sheet_index=tuple(sheet_index),
            plan_set_groups=tuple(plan_set_groups),
            chunks=chunks,
            project_meta=project_meta,
            warnings=tuple(warnings),
            statistics=statistics,
        )
