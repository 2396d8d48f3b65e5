"""Heuristic sheet classification for plan pages.

Every decision is driven by an ordered table of ``(pattern, result)`` pairs that
is evaluated top to bottom; the first hit wins. Supporting a new drawing
convention means adding a row, not another branch.
"""
from __future__ import annotations

import logging
import re
from typing import Optional, Pattern, Sequence, Tuple

from .models import Page, SheetDiscipline, SheetIndexEntry, SheetType
from .normalization import fold_case

LOGGER = logging.getLogger(__name__)

_SHEET_ID_RE = re.compile(r"\b([A-Z]{1,3})[-.]?(\d{1,4}(?:\.\d{1,2})?)\b")

_IMPERIAL_SCALE_RE = re.compile(
    r"(\d+)(?:/(\d+))?\s*\"?\s*=\s*(\d+)\s*'(?:\s*-?\s*\d+\s*\")?"
)
_METRIC_SCALE_RE = re.compile(r"\b1\s*:\s*(\d+)\b")

_IMPERIAL_UNITS_RE = re.compile(r"\b(?:FEET|FOOT|INCH|INCHES)\b|\d+'\s*-?\s*\d+\"")
_METRIC_UNITS_RE = re.compile(
    r"\b(?:MM|CM|METERS?|METRES?|MILLIMETERS?|MILLIMETRES?|CENTIMETERS?|CENTIMETRES?)\b"
)

_TITLE_LINE_RE = re.compile(
    r"\b(?:TITLE SHEET|COVER SHEET|FLOOR PLANS?|FOUNDATION PLANS?|FRAMING PLANS?|ELEVATIONS?|"
    r"SECTIONS?|DETAILS?|SCHEDULES?|LEGEND|SITE PLAN|ROOF PLAN)\b"
)
_MAX_TITLE_LENGTH = 80

Rule = Tuple[Pattern[str], object]


def _rules(*rows: Tuple[str, object]) -> Tuple[Rule, ...]:
    return tuple((re.compile(pattern), result) for pattern, result in rows)


DISCIPLINE_PREFIXES: Tuple[Tuple[str, SheetDiscipline], ...] = (
    ("A", SheetDiscipline.ARCHITECTURAL),
    ("S", SheetDiscipline.STRUCTURAL),
    ("E", SheetDiscipline.ELECTRICAL),
    ("P", SheetDiscipline.PLUMBING),
    ("M", SheetDiscipline.HVAC),
    ("C", SheetDiscipline.CIVIL),
    ("L", SheetDiscipline.LANDSCAPE),
)

DISCIPLINE_KEYWORDS: Tuple[Rule, ...] = _rules(
    (r"\bARCHITECTURAL\b|\bARCH\b", SheetDiscipline.ARCHITECTURAL),
    (r"\bSTRUCTURAL\b|\bSTRUCT\b", SheetDiscipline.STRUCTURAL),
    (r"\bELECTRICAL\b|\bELECT\b", SheetDiscipline.ELECTRICAL),
    (r"\bPLUMBING\b|\bPLUMB\b", SheetDiscipline.PLUMBING),
    (r"\bMECHANICAL\b|\bHVAC\b|\bHEATING\b", SheetDiscipline.HVAC),
    (r"\bCIVIL\b", SheetDiscipline.CIVIL),
    (r"\bLANDSCAPE\b|\bLANDSCAPING\b", SheetDiscipline.LANDSCAPE),
    (r"\bMEP\b", SheetDiscipline.MEP),
)

SHEET_TYPE_RULES: Tuple[Rule, ...] = _rules(
    (r"\bTITLE SHEET\b|\bCOVER\b|\b(?:SHEET|DRAWING) INDEX\b", SheetType.TITLE),
    (r"\bFLOOR ?PLANS?\b|\bFOUNDATION PLANS?\b|\bFRAMING PLANS?\b", SheetType.FLOOR_PLAN),
    (r"\bELEVATIONS?\b|\bELEV\b", SheetType.ELEVATION),
    (r"\bSECTIONS?\b", SheetType.SECTION),
    (r"\bDETAILS?\b|\bDTLS?\b", SheetType.DETAIL),
    (r"\bSCHEDULES?\b|\bSCHED\b", SheetType.SCHEDULE),
    (r"\bLEGENDS?\b", SheetType.LEGEND),
    (r"\bSITE PLAN\b|\bSITE\b", SheetType.SITE_PLAN),
    (r"\bROOF PLAN\b|\bROOF\b", SheetType.ROOF_PLAN),
)

KEYWORD_VOCABULARY: Tuple[str, ...] = (
    "FOUNDATION",
    "WALLS",
    "ROOF",
    "FLOOR",
    "CEILING",
    "DOOR",
    "WINDOW",
    "DOORS",
    "WINDOWS",
    "ELECTRICAL",
    "PLUMBING",
    "HVAC",
    "MEP",
    "SCHEDULE",
    "LEGEND",
    "NOTES",
    "SPECIFICATIONS",
    "BEAM",
    "COLUMN",
    "FOOTING",
    "SLAB",
)


def parse_scale(text: str) -> Tuple[Optional[str], Optional[float]]:
    """Return the first scale notation in ``text`` and its numeric ratio.

    ``1/8" = 1'-0"`` yields a ratio of 96 (one drawing inch is 96 real inches);
    ``1:100`` yields 100.
    """

    imperial = _IMPERIAL_SCALE_RE.search(text)
    metric = _METRIC_SCALE_RE.search(text)
    if imperial and (metric is None or imperial.start() <= metric.start()):
        numerator = int(imperial.group(1))
        denominator = int(imperial.group(2) or 1)
        feet = int(imperial.group(3))
        ratio: Optional[float] = None
        if numerator and denominator:
            value = (feet * 12) / (numerator / denominator)
            ratio = int(value) if float(value).is_integer() else value
        return imperial.group(0).strip(), ratio
    if metric:
        return metric.group(0).strip(), int(metric.group(1))
    return None, None


def detect_units(text: str, scale: Optional[str]) -> Optional[str]:
    if scale:
        if "=" in scale or '"' in scale or "'" in scale:
            return "imperial"
        if ":" in scale:
            return "metric"
    if _IMPERIAL_UNITS_RE.search(text):
        return "imperial"
    if _METRIC_UNITS_RE.search(text):
        return "metric"
    return None


class SheetClassifier:
    """Infer a :class:`SheetIndexEntry` from a single page's text.

    Classification is a pure function of the page: it never looks at other pages,
    keeps no state between calls and never raises. Missing signal degrades fields
    to ``None``, ``unknown`` or ``other``.
    """

    def __init__(
        self,
        *,
        discipline_prefixes: Sequence[Tuple[str, SheetDiscipline]] = DISCIPLINE_PREFIXES,
        discipline_keywords: Sequence[Rule] = DISCIPLINE_KEYWORDS,
        sheet_type_rules: Sequence[Rule] = SHEET_TYPE_RULES,
        keyword_vocabulary: Sequence[str] = KEYWORD_VOCABULARY,
    ) -> None:
        self.discipline_prefixes = tuple(discipline_prefixes)
        self.discipline_keywords = tuple(discipline_keywords)
        self.sheet_type_rules = tuple(sheet_type_rules)
        self.keyword_vocabulary = tuple(keyword_vocabulary)

    def classify(self, page: Page, total_pages: int) -> SheetIndexEntry:
        text = fold_case(page.raw_text)
        sheet_id, prefix = self._detect_sheet_id(text, page.page_number)
        scale, scale_ratio = parse_scale(text)
        entry = SheetIndexEntry(
            sheet_id=sheet_id,
            title=self._detect_title(page),
            discipline=self._detect_discipline(text, prefix),
            sheet_type=self._detect_sheet_type(text, page.page_number),
            scale=scale,
            scale_ratio=scale_ratio,
            units=detect_units(text, scale),
            page_number=page.page_number,
            rotation=page.rotation,
            has_text_layer=page.has_text_layer,
            has_image=page.rendered_image is not None,
            text_length=len(page.raw_text),
            detected_keywords=self._detect_keywords(text),
            width_inches=page.width_inches,
            height_inches=page.height_inches,
        )
        LOGGER.debug(
            "Page %s/%s classified as %s (%s, %s)",
            page.page_number,
            total_pages,
            entry.sheet_id,
            entry.sheet_type.value,
            entry.discipline.value,
        )
        return entry

    @staticmethod
    def _detect_sheet_id(text: str, page_number: int) -> Tuple[str, Optional[str]]:
        match = _SHEET_ID_RE.search(text)
        if match is None:
            return f"PAGE-{page_number}", None
        letters, digits = match.group(1), match.group(2)
        return f"{letters}-{digits}", letters

    def _detect_discipline(self, text: str, prefix: Optional[str]) -> SheetDiscipline:
        if prefix:
            for letters, discipline in self.discipline_prefixes:
                if prefix.startswith(letters):
                    return discipline
        for pattern, discipline in self.discipline_keywords:
            if pattern.search(text):
                return discipline  # type: ignore[return-value]
        return SheetDiscipline.UNKNOWN

    def _detect_sheet_type(self, text: str, page_number: int) -> SheetType:
        if page_number == 1:
            return SheetType.TITLE
        for pattern, sheet_type in self.sheet_type_rules:
            if pattern.search(text):
                return sheet_type  # type: ignore[return-value]
        return SheetType.OTHER

    def _detect_keywords(self, text: str) -> Tuple[str, ...]:
        return tuple(term for term in self.keyword_vocabulary if term in text)

    @staticmethod
    def _detect_title(page: Page) -> str:
        for line in page.raw_text.splitlines():
            folded = fold_case(line.strip())
            if folded and _TITLE_LINE_RE.search(folded):
                return folded[:_MAX_TITLE_LENGTH].strip()
        return f"Sheet {page.page_number}"
