"""Page-aligned, token-budgeted chunk packing with boundary-aware overlap."""
from __future__ import annotations

import logging
import math
import re
import uuid
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..config import ChunkingConfig
from .models import Anchor, Chunk, OverlapInfo, Page, PageRange, SheetDiscipline, SheetIndexEntry

LOGGER = logging.getLogger(__name__)

TOKENS_PER_CHAR = 0.25
PAGE_SEPARATOR = "\n\n"

_BOUNDARY_RE = re.compile(r"\n|[.!?](?=\s)")
_WORD_BOUNDARY_RE = re.compile(r"\s")


def estimate_tokens(text: str) -> int:
    """Approximate token count (about four characters per token)."""

    return math.floor(len(text) * TOKENS_PER_CHAR)


def extract_overlap(text: str, overlap_tokens: int) -> str:
    """Return the tail of ``text`` to carry into the next chunk.

    The tail is the longest suffix of at most ``overlap_tokens`` worth of
    characters that begins right after a line or sentence boundary, falling
    back to a word boundary. It never starts mid-word, so it may be empty.
    """

    if overlap_tokens <= 0 or not text:
        return ""
    max_chars = math.floor(overlap_tokens / TOKENS_PER_CHAR)
    start = len(text) - max_chars
    if start <= 0 or text[start - 1] == "\n":
        return text[max(start, 0):].lstrip()

    window = text[start:]
    match = _BOUNDARY_RE.search(window) or _WORD_BOUNDARY_RE.search(window)
    if match is None:
        return ""
    return window[match.end():].lstrip()


@dataclass(slots=True)
class _ChunkBuffer:
    text: str = ""
    pages: List[int] = field(default_factory=list)
    sheets: List[SheetIndexEntry] = field(default_factory=list)
    overlap_chars: int = 0
    carried_sheet: Optional[SheetIndexEntry] = None

    @property
    def token_count(self) -> int:
        return estimate_tokens(self.text)

    def joined(self, segment: str) -> str:
        return f"{self.text}{PAGE_SEPARATOR}{segment}" if self.text else segment

    def append(self, page_number: int, sheet: SheetIndexEntry, segment: str) -> None:
        self.text = self.joined(segment)
        self.pages.append(page_number)
        self.sheets.append(sheet)


@dataclass(frozen=True, slots=True)
class _ChunkDraft:
    text: str
    pages: Tuple[int, ...]
    sheets: Tuple[SheetIndexEntry, ...]
    overlap_chars: int
    carried_sheet: Optional[SheetIndexEntry]

    @property
    def subset(self) -> Tuple[SheetIndexEntry, ...]:
        if self.carried_sheet is None:
            return self.sheets
        return (self.carried_sheet, *self.sheets)


class ChunkPacker:
    """Greedy single-pass packer that never splits a page across chunks."""

    def __init__(self, config: Optional[ChunkingConfig] = None) -> None:
        self.config = config or ChunkingConfig()

    def pack(
        self,
        pages: Sequence[Page],
        sheet_index: Sequence[SheetIndexEntry],
        *,
        document_id: str,
    ) -> List[Chunk]:
        sheets_by_page: Dict[int, SheetIndexEntry] = {entry.page_number: entry for entry in sheet_index}
        ordered_pages = sorted(pages, key=lambda page: page.page_number)

        drafts: List[_ChunkDraft] = []
        buffer = _ChunkBuffer()
        for page in ordered_pages:
            sheet = sheets_by_page.get(page.page_number)
            if sheet is None:
                raise ValueError(f"No sheet index entry for page {page.page_number}")
            segment = self.render_page(page, sheet)

            if not buffer.pages and buffer.text:
                buffer = self._fit_seed(buffer, segment)

            if buffer.pages and estimate_tokens(buffer.joined(segment)) > self.config.max_tokens:
                drafts.append(self._finalize(buffer))
                buffer = self._seed_next(buffer)

            buffer.append(page.page_number, sheet, segment)

            if buffer.token_count >= self.config.target_tokens:
                drafts.append(self._finalize(buffer))
                buffer = self._seed_next(buffer)

        if buffer.pages:
            if buffer.token_count < self.config.min_tokens and drafts:
                LOGGER.debug(
                    "Final chunk for %s is %s tokens, below the advisory minimum of %s",
                    document_id,
                    buffer.token_count,
                    self.config.min_tokens,
                )
            drafts.append(self._finalize(buffer))

        chunks = self._link(drafts, ordered_pages, document_id)
        LOGGER.info("Packed %s pages of %s into %s chunks", len(ordered_pages), document_id, len(chunks))
        return chunks

    @staticmethod
    def render_page(page: Page, sheet: SheetIndexEntry) -> str:
        header = f"=== PAGE {page.page_number} ({sheet.sheet_id}: {sheet.title}) ==="
        if not page.raw_text:
            return header
        return f"{header}\n\n{page.raw_text}"

    @staticmethod
    def _finalize(buffer: _ChunkBuffer) -> _ChunkDraft:
        return _ChunkDraft(
            text=buffer.text,
            pages=tuple(buffer.pages),
            sheets=tuple(buffer.sheets),
            overlap_chars=buffer.overlap_chars,
            carried_sheet=buffer.carried_sheet,
        )

    def _seed_next(self, finished: _ChunkBuffer) -> _ChunkBuffer:
        overlap = extract_overlap(finished.text, self.config.overlap_tokens)
        return _ChunkBuffer(
            text=overlap,
            overlap_chars=len(overlap),
            carried_sheet=finished.sheets[-1] if overlap and finished.sheets else None,
        )

    def _fit_seed(self, seeded: _ChunkBuffer, segment: str) -> _ChunkBuffer:
        """Shrink the carried overlap until the incoming page fits under ``max_tokens``.

        A page that is oversized on its own starts with no overlap at all.
        """

        limit = self.config.max_tokens
        budget = limit - estimate_tokens(PAGE_SEPARATOR + segment)
        overlap = seeded.text
        while overlap and estimate_tokens(f"{overlap}{PAGE_SEPARATOR}{segment}") > limit:
            overlap = extract_overlap(overlap, budget) if budget > 0 else ""
            budget -= 1
        return _ChunkBuffer(
            text=overlap,
            overlap_chars=len(overlap),
            carried_sheet=seeded.carried_sheet if overlap else None,
        )

    def _link(self, drafts: Sequence[_ChunkDraft], pages: Iterable[Page], document_id: str) -> List[Chunk]:
        image_refs = {
            page.page_number: page.rendered_image.image_ref for page in pages if page.rendered_image is not None
        }
        chunk_ids = [self.chunk_id(document_id, index) for index in range(len(drafts))]
        last_index = len(drafts) - 1

        chunks: List[Chunk] = []
        for index, draft in enumerate(drafts):
            overlap_info = OverlapInfo(
                prev_chunk_id=chunk_ids[index - 1] if index > 0 else None,
                next_chunk_id=chunk_ids[index + 1] if index < last_index else None,
                overlap_tokens=self.config.overlap_tokens,
                overlap_chars=draft.overlap_chars,
                carried_sheet_id=draft.carried_sheet.sheet_id if draft.carried_sheet else None,
            )
            chunks.append(
                Chunk(
                    chunk_id=chunk_ids[index],
                    document_id=document_id,
                    chunk_index=index,
                    page_range=PageRange(start=draft.pages[0], end=draft.pages[-1], pages=draft.pages),
                    sheet_index_subset=draft.subset,
                    text=draft.text,
                    token_count=estimate_tokens(draft.text),
                    image_refs=tuple(image_refs[number] for number in draft.pages if number in image_refs),
                    anchors=_build_anchors(draft.subset),
                    overlap_info=overlap_info,
                    discipline=_dominant_discipline(draft.sheets),
                    sheet_scale_units=_summarize_scales(draft.subset),
                )
            )
        return chunks

    @staticmethod
    def chunk_id(document_id: str, chunk_index: int) -> str:
        return uuid.uuid5(uuid.NAMESPACE_URL, f"plan-chunk:{document_id}:{chunk_index}").hex


def _build_anchors(sheets: Sequence[SheetIndexEntry]) -> Tuple[Anchor, ...]:
    anchors: List[Anchor] = []
    for sheet in sheets:
        anchors.append(
            Anchor(
                anchor_id=f"anchor_p{sheet.page_number}_{sheet.sheet_id}",
                type="sheet_id",
                value=sheet.sheet_id,
                description=f"Sheet {sheet.sheet_id}: {sheet.title}",
                page_number=sheet.page_number,
            )
        )
        anchors.append(
            Anchor(
                anchor_id=f"anchor_p{sheet.page_number}",
                type="page",
                value=sheet.page_number,
                description=f"Page {sheet.page_number}",
                page_number=sheet.page_number,
            )
        )
    return tuple(anchors)


def _dominant_discipline(sheets: Sequence[SheetIndexEntry]) -> SheetDiscipline:
    if not sheets:
        return SheetDiscipline.UNKNOWN
    return Counter(sheet.discipline for sheet in sheets).most_common(1)[0][0]


def _summarize_scales(sheets: Sequence[SheetIndexEntry]) -> str:
    summaries: Dict[str, None] = {}
    for sheet in sheets:
        if sheet.scale is None:
            continue
        label = f"{sheet.scale} ({sheet.units})" if sheet.units else sheet.scale
        summaries.setdefault(label, None)
    return ", ".join(summaries) if summaries else "Scale not detected"
