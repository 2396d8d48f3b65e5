"""Project level metadata detected from the leading title pages of a plan set."""
from __future__ import annotations

import re
from typing import List, Optional, Sequence

from .language import LanguageDetector
from .models import Page, ProjectMeta

TITLE_PAGE_WINDOW = 3

_PROJECT_RE = re.compile(r"\bPROJECT(?:\s+NAME)?\s*[:\-]?\s+([A-Z0-9][^\n]{2,80})", re.IGNORECASE)
_ADDRESS_RE = re.compile(
    r"\d+\s+[A-Z][A-Za-z .]+?\s(?:ST|STREET|AVE|AVENUE|RD|ROAD|BLVD|BOULEVARD|DR|DRIVE|LN|LANE|WAY|CT|COURT)\.?"
    r"[\s,]+(?:[A-Z][A-Za-z .]+,\s*)?[A-Z]{2}\s+\d{5}(?:-\d{4})?",
    re.IGNORECASE,
)


def _unique(values: Sequence[str]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for value in values:
        seen.setdefault(value, None)
    return tuple(seen)


def detect_projects(pages: Sequence[Page]) -> tuple[str, ...]:
    found: List[str] = []
    for page in pages[:TITLE_PAGE_WINDOW]:
        match = _PROJECT_RE.search(page.raw_text)
        if match:
            found.append(match.group(1).strip())
    return _unique(found)


def detect_addresses(pages: Sequence[Page]) -> tuple[str, ...]:
    found: List[str] = []
    for page in pages[:TITLE_PAGE_WINDOW]:
        found.extend(" ".join(match.group(0).split()) for match in _ADDRESS_RE.finditer(page.raw_text))
    return _unique(found)


def build_project_meta(
    pages: Sequence[Page],
    *,
    document_id: str,
    file_name: str,
    language_detector: Optional[LanguageDetector] = None,
) -> ProjectMeta:
    detector = language_detector or LanguageDetector()
    language = detector.detect("\n".join(page.raw_text for page in pages[:TITLE_PAGE_WINDOW]))
    return ProjectMeta(
        document_id=document_id,
        file_name=file_name,
        total_pages=len(pages),
        detected_projects=detect_projects(pages),
        detected_addresses=detect_addresses(pages),
        language=language,
    )
