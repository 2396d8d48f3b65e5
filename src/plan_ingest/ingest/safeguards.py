"""Annotations that keep downstream consumers from double-counting quantities."""
from __future__ import annotations

import hashlib
import re
from dataclasses import replace
from typing import List, Tuple

from .models import Chunk, Safeguards, SheetType

DEDUPE_TEXT_PREFIX = 500

SCHEDULE_HINT = "SCHEDULE_SHEET: Quantities here may be summaries - verify against detail sheets"
DETAIL_HINT = "DETAIL_SHEET: Quantities here may reference parent sheets - verify for double-counting"

_QUANTITY_RE = re.compile(r"\b(?:QTY|QUANTITY|COUNT)\b\s*:?\s*(\d+)", re.IGNORECASE)


def dedupe_hash(chunk: Chunk) -> str:
    pages = ",".join(str(number) for number in sorted(chunk.page_range.pages))
    digest = hashlib.sha256(f"{pages}:{chunk.text[:DEDUPE_TEXT_PREFIX]}".encode("utf-8"))
    return digest.hexdigest()


def quantity_signatures(text: str) -> Tuple[str, ...]:
    return tuple(f"qty_{match.group(1)}" for match in _QUANTITY_RE.finditer(text))


def no_multiply_hints(chunk: Chunk) -> Tuple[str, ...]:
    sheet_types = {entry.sheet_type for entry in chunk.sheet_index_subset}
    hints: List[str] = []
    if SheetType.SCHEDULE in sheet_types:
        hints.append(SCHEDULE_HINT)
    if SheetType.DETAIL in sheet_types:
        hints.append(DETAIL_HINT)
    return tuple(hints)


class SafeguardAnnotator:
    """Attach dedupe, location and quantity safeguards to packed chunks."""

    def __init__(self, *, enable_dedupe: bool = True) -> None:
        self.enable_dedupe = enable_dedupe

    def annotate(self, chunk: Chunk) -> Chunk:
        safeguards = Safeguards(
            dedupe_hash=dedupe_hash(chunk) if self.enable_dedupe else None,
            location_keys=tuple(entry.sheet_id for entry in chunk.sheet_index_subset),
            quantity_signatures=quantity_signatures(chunk.text),
            no_multiply_hints=no_multiply_hints(chunk),
        )
        return replace(chunk, safeguards=safeguards)
