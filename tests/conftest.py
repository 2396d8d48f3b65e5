"""Shared fixtures: a tiny PDF writer, fake renderers and model factories."""
from __future__ import annotations

from typing import Callable, Iterable, List, Optional, Sequence, Tuple

import pytest

from plan_ingest.ingest.extractors import RenderedImage
from plan_ingest.ingest.models import (
    DocumentExtraction,
    IngestWarning,
    Page,
    PageImage,
    SheetDiscipline,
    SheetIndexEntry,
    SheetType,
)

FAKE_PNG = b"\x89PNG\r\n\x1a\nfake-image"

Line = Tuple[float, float, str]


def _escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")


def build_pdf(
    pages: Sequence[Sequence[Line] | str],
    *,
    media_box: Tuple[int, int] = (612, 792),
    rotate: int = 0,
) -> bytes:
    """Write a minimal PDF with one Helvetica text line per ``(x, y, text)`` entry.

    A page given as a plain string is laid out one line per ``\\n`` from the top.
    """

    width, height = media_box
    objects: List[bytes] = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"",
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    ]
    kids: List[str] = []
    for index, page in enumerate(pages):
        if isinstance(page, str):
            lines: Sequence[Line] = [
                (72, height - 72 - 14 * row, text) for row, text in enumerate(page.splitlines()) if text
            ]
        else:
            lines = page
        stream = "\n".join(f"BT /F1 10 Tf {x} {y} Td ({_escape(text)}) Tj ET" for x, y, text in lines)
        stream_bytes = stream.encode("latin-1")
        page_id = 4 + 2 * index
        content_id = page_id + 1
        kids.append(f"{page_id} 0 R")
        objects.append(
            (
                f"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 {width} {height}] /Rotate {rotate} "
                f"/Contents {content_id} 0 R /Resources << /Font << /F1 3 0 R >> >> >>"
            ).encode("latin-1")
        )
        objects.append(
            b"<< /Length %d >>\nstream\n" % len(stream_bytes) + stream_bytes + b"\nendstream"
        )
    objects[1] = f"<< /Type /Pages /Kids [{' '.join(kids)}] /Count {len(pages)} >>".encode("latin-1")

    output = bytearray(b"%PDF-1.4\n")
    offsets: List[int] = []
    for number, body in enumerate(objects, start=1):
        offsets.append(len(output))
        output += f"{number} 0 obj\n".encode("latin-1") + body + b"\nendobj\n"
    xref_offset = len(output)
    output += f"xref\n0 {len(objects) + 1}\n".encode("latin-1")
    output += b"0000000000 65535 f \n"
    for offset in offsets:
        output += f"{offset:010d} 00000 n \n".encode("latin-1")
    output += (
        f"trailer\n<< /Size {len(objects) + 1} /Root 1 0 R >>\nstartxref\n{xref_offset}\n%%EOF\n"
    ).encode("latin-1")
    return bytes(output)


class FakeRenderer:
    """Renderer double returning a fixed PNG payload; can fail chosen pages."""

    def __init__(self, data: bytes, fail_pages: Iterable[int] = ()) -> None:
        self.data = data
        self.fail_pages = set(fail_pages)
        self.rendered: List[int] = []
        self.closed = False

    def render(self, page_number: int, dpi: int) -> RenderedImage:
        if page_number in self.fail_pages:
            raise RuntimeError(f"cannot rasterise page {page_number}")
        self.rendered.append(page_number)
        return RenderedImage(png=FAKE_PNG, width=dpi, height=dpi)

    def close(self) -> None:
        self.closed = True


class StubExtractor:
    """Extractor double handing back prepared pages."""

    def __init__(
        self,
        pages: Sequence[Page],
        warnings: Sequence[IngestWarning] = (),
        on_extract: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.pages = tuple(pages)
        self.warnings = tuple(warnings)
        self.on_extract = on_extract
        self.calls = 0
        self.discarded: List[str] = []

    def extract(self, data: bytes, *, document_id: str, cancel_event=None) -> DocumentExtraction:  # noqa: ANN001
        self.calls += 1
        if self.on_extract is not None:
            self.on_extract(document_id)
        return DocumentExtraction(pages=self.pages, warnings=self.warnings)

    def discard_images(self, document_id: str) -> int:
        self.discarded.append(document_id)
        return 0


SCENARIO_PAGES = (
    "A-0\nTITLE SHEET\nPROJECT NAME: RIVERSIDE LIBRARY\nSCALE: 1\"=40'-0\"",
    "A-1\nFIRST FLOOR PLAN\nSCALE: 1/8\"=1'-0\"",
    "S-1\nDOOR SCHEDULE\nQTY: 12 DOORS TYPE A",
    "A-8\nTYPICAL DETAILS\nSEE SHEET A-1 FOR LOCATIONS",
    "S-2\nFOUNDATION PLAN\nSCALE: 1/4\"=1'-0\"",
)


@pytest.fixture
def pdf_factory() -> Callable[..., bytes]:
    return build_pdf


@pytest.fixture
def scenario_texts() -> Tuple[str, ...]:
    return SCENARIO_PAGES


@pytest.fixture
def page_factory() -> Callable[..., Page]:
    def _make(page_number: int, text: str, *, image: bool = False) -> Page:
        rendered = None
        if image:
            rendered = PageImage(
                page_number=page_number,
                image_ref=f"memory://doc/page-{page_number}.png",
                width=100,
                height=100,
                dpi=72,
            )
        return Page(page_number=page_number, raw_text=text, rendered_image=rendered)

    return _make


@pytest.fixture
def scenario_pages(page_factory) -> Tuple[Page, ...]:  # noqa: ANN001
    return tuple(page_factory(number, text) for number, text in enumerate(SCENARIO_PAGES, start=1))


@pytest.fixture
def entry_factory() -> Callable[..., SheetIndexEntry]:
    def _make(
        page_number: int,
        sheet_id: Optional[str] = None,
        *,
        sheet_type: SheetType = SheetType.FLOOR_PLAN,
        discipline: SheetDiscipline = SheetDiscipline.ARCHITECTURAL,
        scale: Optional[str] = None,
        title: str = "FLOOR PLAN",
    ) -> SheetIndexEntry:
        return SheetIndexEntry(
            sheet_id=sheet_id or f"A-{page_number}",
            title=title,
            discipline=discipline,
            sheet_type=sheet_type,
            scale=scale,
            scale_ratio=None,
            units="imperial" if scale else None,
            page_number=page_number,
            rotation=0,
            has_text_layer=True,
            has_image=False,
            text_length=0,
        )

    return _make


@pytest.fixture
def fake_renderer_factory() -> Callable[..., Callable[[bytes], FakeRenderer]]:
    """Return a factory building renderer factories that fail ``fail_pages``."""

    def _factory(fail_pages: Iterable[int] = ()) -> Callable[[bytes], FakeRenderer]:
        pages = tuple(fail_pages)
        return lambda data: FakeRenderer(data, fail_pages=pages)

    return _factory
