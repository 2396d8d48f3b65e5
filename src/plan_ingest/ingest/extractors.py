"""Per-page text and image extraction for PDF plan sets."""
from __future__ import annotations

import io
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Set, Tuple

import fitz  # PyMuPDF
from PyPDF2 import PdfReader

from ..config import DEFAULT_IMAGE_DPI, DEFAULT_MAX_DOCUMENT_BYTES
from ..errors import DocumentTooLargeError, DocumentUnreadableError, IngestionCancelledError
from ..storage import ImageStore, InMemoryImageStore
from .models import DocumentExtraction, IngestWarning, Page, PageImage, TextItem
from .normalization import normalize_text

LOGGER = logging.getLogger(__name__)

LINE_TOLERANCE = 0.5
POINTS_PER_INCH = 72.0

# PyMuPDF documents are not safe to touch from several threads at once.
_FITZ_LOCK = threading.Lock()


def order_text_items(items: Sequence[TextItem], tolerance: float = LINE_TOLERANCE) -> str:
    """Lay positioned fragments out in reading order.

    Fragments are sorted top to bottom (PDF y grows upwards), fragments whose y
    lies within ``tolerance`` of the first fragment of the current line join
    that line, and each line reads left to right.
    """

    lines: List[List[TextItem]] = []
    line_y = 0.0
    for item in sorted(items, key=lambda fragment: (-fragment.y, fragment.x)):
        if lines and abs(item.y - line_y) <= tolerance:
            lines[-1].append(item)
        else:
            lines.append([item])
            line_y = item.y
    return "\n".join(
        " ".join(fragment.text for fragment in sorted(line, key=lambda fragment: fragment.x)) for line in lines
    )


def check_cancelled(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise IngestionCancelledError("Ingestion was cancelled")


@dataclass(frozen=True, slots=True)
class RenderedImage:
    png: bytes
    width: int
    height: int


class PageRenderer(Protocol):
    def render(self, page_number: int, dpi: int) -> RenderedImage:
        ...

    def close(self) -> None:
        ...


class PyMuPDFRenderer:
    """Rasterises pages to PNG with PyMuPDF."""

    def __init__(self, data: bytes) -> None:
        with _FITZ_LOCK:
            self._document = fitz.open(stream=data, filetype="pdf")

    def render(self, page_number: int, dpi: int) -> RenderedImage:
        zoom = dpi / POINTS_PER_INCH
        with _FITZ_LOCK:
            page = self._document.load_page(page_number - 1)
            pixmap = page.get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False)
            return RenderedImage(png=pixmap.tobytes("png"), width=pixmap.width, height=pixmap.height)

    def close(self) -> None:
        with _FITZ_LOCK:
            self._document.close()


RendererFactory = Callable[[bytes], PageRenderer]


@dataclass(frozen=True, slots=True)
class _TextOutcome:
    raw_text: str
    text_items: Tuple[TextItem, ...] = ()
    rotation: int = 0
    width_inches: Optional[float] = None
    height_inches: Optional[float] = None
    error: Optional[str] = None


@dataclass(frozen=True, slots=True)
class _ImageOutcome:
    image: Optional[PageImage] = None
    error: Optional[str] = None


class PDFPageExtractor:
    """Extract ordered page text and rendered page images from a PDF.

    Text extraction and rendering for every page are queued as separate tasks
    on a bounded thread pool. Each worker thread opens its own ``PdfReader``;
    the results are joined and re-sorted by page number before returning.
    """

    def __init__(
        self,
        *,
        max_document_bytes: int = DEFAULT_MAX_DOCUMENT_BYTES,
        worker_pool_size: int = 4,
        enable_images: bool = True,
        image_dpi: int = DEFAULT_IMAGE_DPI,
        image_store: Optional[ImageStore] = None,
        renderer_factory: RendererFactory = PyMuPDFRenderer,
    ) -> None:
        self.max_document_bytes = max_document_bytes
        self.worker_pool_size = max(1, worker_pool_size)
        self.enable_images = enable_images
        self.image_dpi = image_dpi
        self.image_store: ImageStore = image_store or InMemoryImageStore()
        self.renderer_factory = renderer_factory
        self._stored_documents: Set[str] = set()
        self._stored_lock = threading.Lock()

    def extract(
        self,
        data: bytes,
        *,
        document_id: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> DocumentExtraction:
        if len(data) > self.max_document_bytes:
            raise DocumentTooLargeError(len(data), self.max_document_bytes)
        page_count = self._count_pages(data)
        check_cancelled(cancel_event)

        renderer: Optional[PageRenderer] = None
        renderer_error: Optional[str] = None
        if self.enable_images:
            renderer, renderer_error = self._open_renderer(data)

        try:
            texts, images = self._run_tasks(data, page_count, document_id, renderer, cancel_event)
        finally:
            if renderer is not None:
                renderer.close()

        pages: List[Page] = []
        warnings: List[IngestWarning] = []
        for page_number in sorted(texts):
            text = texts[page_number]
            image = images.get(page_number, _ImageOutcome(error=renderer_error) if self.enable_images else None)
            if text.error is not None:
                warnings.append(
                    IngestWarning(
                        code="text_extraction_failed",
                        message=f"Text extraction failed on page {page_number}: {text.error}",
                        page_number=page_number,
                    )
                )
            if image is not None and image.error is not None:
                warnings.append(
                    IngestWarning(
                        code="image_render_failed",
                        message=f"Image rendering failed on page {page_number}: {image.error}",
                        page_number=page_number,
                    )
                )
            pages.append(
                Page(
                    page_number=page_number,
                    raw_text=text.raw_text,
                    text_items=text.text_items,
                    rendered_image=image.image if image is not None else None,
                    rotation=text.rotation,
                    width_inches=text.width_inches,
                    height_inches=text.height_inches,
                )
            )

        if all(texts[number].error is not None for number in texts):
            raise DocumentUnreadableError(f"Text extraction failed on all {page_count} pages")

        LOGGER.info(
            "Extracted %s pages from %s (%s images, %s warnings)",
            len(pages),
            document_id,
            sum(1 for page in pages if page.rendered_image is not None),
            len(warnings),
        )
        return DocumentExtraction(pages=tuple(pages), warnings=tuple(warnings))

    def discard_images(self, document_id: str) -> int:
        """Remove the page images this extractor stored for ``document_id``.

        Images from other extractors (an earlier ingestion of the same
        document) are left alone when this one never stored any.
        """

        with self._stored_lock:
            if document_id not in self._stored_documents:
                return 0
            self._stored_documents.discard(document_id)
        return self.image_store.delete(document_id)

    def _run_tasks(
        self,
        data: bytes,
        page_count: int,
        document_id: str,
        renderer: Optional[PageRenderer],
        cancel_event: Optional[threading.Event],
    ) -> Tuple[Dict[int, _TextOutcome], Dict[int, _ImageOutcome]]:
        local = threading.local()
        text_futures: Dict[int, Future[_TextOutcome]] = {}
        image_futures: Dict[int, Future[_ImageOutcome]] = {}
        with ThreadPoolExecutor(max_workers=self.worker_pool_size, thread_name_prefix="plan-extract") as executor:
            try:
                for page_number in range(1, page_count + 1):
                    check_cancelled(cancel_event)
                    text_futures[page_number] = executor.submit(
                        self._extract_text, data, local, page_number, cancel_event
                    )
                    if renderer is not None:
                        check_cancelled(cancel_event)
                        image_futures[page_number] = executor.submit(
                            self._render_image, renderer, document_id, page_number, cancel_event
                        )
                texts = {number: future.result() for number, future in text_futures.items()}
                images = {number: future.result() for number, future in image_futures.items()}
            except IngestionCancelledError:
                executor.shutdown(wait=True, cancel_futures=True)
                LOGGER.info("Extraction of %s cancelled", document_id)
                raise
        return texts, images

    @staticmethod
    def _count_pages(data: bytes) -> int:
        try:
            reader = PdfReader(io.BytesIO(data))
            if reader.is_encrypted:
                raise DocumentUnreadableError("Document is encrypted")
            page_count = len(reader.pages)
        except DocumentUnreadableError:
            raise
        except Exception as exc:
            raise DocumentUnreadableError(f"Unable to open PDF: {exc}", cause=exc) from exc
        if page_count == 0:
            raise DocumentUnreadableError("Document has no pages")
        return page_count

    def _open_renderer(self, data: bytes) -> Tuple[Optional[PageRenderer], Optional[str]]:
        try:
            return self.renderer_factory(data), None
        except Exception as error:
            LOGGER.warning("Unable to open document for rendering: %s", error)
            return None, str(error)

    @staticmethod
    def _reader(data: bytes, local: threading.local) -> PdfReader:
        reader = getattr(local, "reader", None)
        if reader is None:
            reader = PdfReader(io.BytesIO(data))
            local.reader = reader
        return reader

    def _extract_text(
        self,
        data: bytes,
        local: threading.local,
        page_number: int,
        cancel_event: Optional[threading.Event],
    ) -> _TextOutcome:
        check_cancelled(cancel_event)
        try:
            page = self._reader(data, local).pages[page_number - 1]
            items: List[TextItem] = []

            def visitor(text, cm, tm, font_dict, font_size):  # noqa: ANN001 - PyPDF2 callback
                fragment = (text or "").strip()
                if not fragment:
                    return
                x = tm[4] * cm[0] + tm[5] * cm[2] + cm[4]
                y = tm[4] * cm[1] + tm[5] * cm[3] + cm[5]
                items.append(TextItem(text=fragment, x=float(x), y=float(y), font_size=float(font_size or 0)))

            plain = page.extract_text(visitor_text=visitor) or ""
            raw_text = normalize_text(order_text_items(items) if items else plain)
            box = page.mediabox
            return _TextOutcome(
                raw_text=raw_text,
                text_items=tuple(items),
                rotation=int(page.rotation or 0) % 360,
                width_inches=round(float(box.width) / POINTS_PER_INCH, 2),
                height_inches=round(float(box.height) / POINTS_PER_INCH, 2),
            )
        except Exception as error:
            LOGGER.warning("Failed to extract text from PDF page %s: %s", page_number, error)
            return _TextOutcome(raw_text="", error=str(error) or error.__class__.__name__)

    def _render_image(
        self,
        renderer: PageRenderer,
        document_id: str,
        page_number: int,
        cancel_event: Optional[threading.Event],
    ) -> _ImageOutcome:
        check_cancelled(cancel_event)
        try:
            rendered = renderer.render(page_number, self.image_dpi)
            image_ref = self.image_store.save(document_id, page_number, rendered.png)
            with self._stored_lock:
                self._stored_documents.add(document_id)
        except Exception as error:
            LOGGER.warning("Failed to render PDF page %s: %s", page_number, error)
            return _ImageOutcome(error=str(error) or error.__class__.__name__)
        return _ImageOutcome(
            image=PageImage(
                page_number=page_number,
                image_ref=image_ref,
                width=rendered.width,
                height=rendered.height,
                dpi=self.image_dpi,
                size_bytes=len(rendered.png),
            )
        )
