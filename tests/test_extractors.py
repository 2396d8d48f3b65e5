from __future__ import annotations

import threading

import pytest

from plan_ingest.errors import DocumentTooLargeError, DocumentUnreadableError, IngestionCancelledError
from plan_ingest.ingest.extractors import PDFPageExtractor, PyMuPDFRenderer, order_text_items
from plan_ingest.ingest.models import TextItem
from plan_ingest.storage import InMemoryImageStore


@pytest.fixture
def three_page_pdf(pdf_factory) -> bytes:
    return pdf_factory(
        [
            "A-0\nTITLE SHEET",
            "A-1\nFIRST FLOOR PLAN",
            "S-1\nDOOR SCHEDULE",
        ]
    )


def test_order_text_items_groups_lines_top_to_bottom() -> None:
    items = [
        TextItem(text="PLAN", x=120.0, y=700.0),
        TextItem(text="BOTTOM", x=10.0, y=100.0),
        TextItem(text="FLOOR", x=50.0, y=700.3),
    ]

    assert order_text_items(items) == "FLOOR PLAN\nBOTTOM"


def test_order_text_items_splits_lines_beyond_tolerance() -> None:
    items = [TextItem(text="UPPER", x=50.0, y=700.0), TextItem(text="LOWER", x=10.0, y=699.4)]

    assert order_text_items(items) == "UPPER\nLOWER"


def test_extracts_text_images_and_geometry(three_page_pdf, fake_renderer_factory) -> None:
    store = InMemoryImageStore()
    extractor = PDFPageExtractor(
        worker_pool_size=2,
        image_store=store,
        renderer_factory=fake_renderer_factory(),
    )

    extraction = extractor.extract(three_page_pdf, document_id="doc-1")

    assert [page.page_number for page in extraction.pages] == [1, 2, 3]
    assert "TITLE SHEET" in extraction.pages[0].raw_text
    assert "FIRST FLOOR PLAN" in extraction.pages[1].raw_text
    assert "DOOR SCHEDULE" in extraction.pages[2].raw_text
    assert extraction.warnings == ()
    assert extraction.images_extracted == 3
    assert extraction.pages[1].rendered_image.image_ref == "memory://doc-1/page-2.png"
    assert extraction.pages[1].rendered_image.dpi == 300
    assert len(store) == 3
    assert extraction.pages[0].width_inches == 8.5
    assert extraction.pages[0].height_inches == 11.0


def test_rotation_is_recorded(pdf_factory) -> None:
    data = pdf_factory(["A-1 FLOOR PLAN"], rotate=90)

    extraction = PDFPageExtractor(enable_images=False).extract(data, document_id="doc-1")

    assert extraction.pages[0].rotation == 90


def test_render_failure_degrades_single_page(three_page_pdf, fake_renderer_factory) -> None:
    extractor = PDFPageExtractor(renderer_factory=fake_renderer_factory(fail_pages=[2]))

    extraction = extractor.extract(three_page_pdf, document_id="doc-1")

    assert extraction.pages[1].rendered_image is None
    assert extraction.pages[0].rendered_image is not None
    assert extraction.pages[2].rendered_image is not None
    assert "FIRST FLOOR PLAN" in extraction.pages[1].raw_text
    assert [(warning.code, warning.page_number) for warning in extraction.warnings] == [
        ("image_render_failed", 2)
    ]


def test_renderer_that_cannot_open_fails_every_image(three_page_pdf) -> None:
    def broken_factory(data: bytes):
        raise RuntimeError("renderer unavailable")

    extraction = PDFPageExtractor(renderer_factory=broken_factory).extract(three_page_pdf, document_id="doc-1")

    assert extraction.images_extracted == 0
    assert [warning.page_number for warning in extraction.warnings] == [1, 2, 3]
    assert {warning.code for warning in extraction.warnings} == {"image_render_failed"}


def test_images_can_be_disabled(three_page_pdf, fake_renderer_factory) -> None:
    extractor = PDFPageExtractor(enable_images=False, renderer_factory=fake_renderer_factory())

    extraction = extractor.extract(three_page_pdf, document_id="doc-1")

    assert extraction.images_extracted == 0
    assert extraction.warnings == ()


def test_size_ceiling_is_enforced_before_parsing(three_page_pdf) -> None:
    with pytest.raises(DocumentTooLargeError):
        PDFPageExtractor(max_document_bytes=10).extract(three_page_pdf, document_id="doc-1")


def test_garbage_document_is_unreadable() -> None:
    with pytest.raises(DocumentUnreadableError):
        PDFPageExtractor(enable_images=False).extract(b"%PDF-1.4\nnot really a pdf", document_id="doc-1")


def test_every_page_failing_text_extraction_is_fatal(
    three_page_pdf, monkeypatch: pytest.MonkeyPatch
) -> None:
    def broken_reader(data, local):  # noqa: ANN001
        raise ValueError("corrupt content stream")

    monkeypatch.setattr(PDFPageExtractor, "_reader", staticmethod(broken_reader))

    with pytest.raises(DocumentUnreadableError):
        PDFPageExtractor(enable_images=False).extract(three_page_pdf, document_id="doc-1")


def test_cancelled_extraction_returns_nothing(three_page_pdf, fake_renderer_factory) -> None:
    cancel_event = threading.Event()
    cancel_event.set()

    with pytest.raises(IngestionCancelledError):
        PDFPageExtractor(renderer_factory=fake_renderer_factory()).extract(
            three_page_pdf, document_id="doc-1", cancel_event=cancel_event
        )


def test_pymupdf_renderer_produces_png(three_page_pdf) -> None:
    renderer = PyMuPDFRenderer(three_page_pdf)
    try:
        rendered = renderer.render(1, dpi=36)
    finally:
        renderer.close()

    assert rendered.png.startswith(b"\x89PNG")
    assert rendered.width == 306
    assert rendered.height == 396
