"""Extraction, classification and chunking of architectural plan sets."""

from __future__ import annotations

from .chunking import ChunkPacker, estimate_tokens, extract_overlap
from .classifier import SheetClassifier, parse_scale
from .extractors import PDFPageExtractor, PyMuPDFRenderer, order_text_items
from .grouping import disambiguate_sheet_ids, group_plan_sets
from .models import (
    Chunk,
    IngestWarning,
    Page,
    PlanSetGroup,
    SheetDiscipline,
    SheetIndexEntry,
    SheetType,
)
from .pipeline import IngestionResult, IngestPipeline, IngestStatistics
from .safeguards import SafeguardAnnotator

__all__ = [
    "Chunk",
    "ChunkPacker",
    "IngestPipeline",
    "IngestStatistics",
    "IngestWarning",
    "IngestionResult",
    "PDFPageExtractor",
    "Page",
    "PlanSetGroup",
    "PyMuPDFRenderer",
    "SafeguardAnnotator",
    "SheetClassifier",
    "SheetDiscipline",
    "SheetIndexEntry",
    "SheetType",
    "disambiguate_sheet_ids",
    "estimate_tokens",
    "extract_overlap",
    "group_plan_sets",
    "order_text_items",
    "parse_scale",
]
