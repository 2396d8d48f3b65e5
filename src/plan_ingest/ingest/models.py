"""Data models used by the ingestion pipeline.

Every model is a frozen dataclass holding tuples rather than lists: each stage
consumes the previous stage's output as a read-only value and produces new
values instead of editing what it was given.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class SheetDiscipline(str, Enum):
    ARCHITECTURAL = "architectural"
    STRUCTURAL = "structural"
    MEP = "mep"
    ELECTRICAL = "electrical"
    PLUMBING = "plumbing"
    HVAC = "hvac"
    CIVIL = "civil"
    LANDSCAPE = "landscape"
    UNKNOWN = "unknown"


class SheetType(str, Enum):
    TITLE = "title"
    FLOOR_PLAN = "floor_plan"
    ELEVATION = "elevation"
    SECTION = "section"
    DETAIL = "detail"
    SCHEDULE = "schedule"
    LEGEND = "legend"
    SITE_PLAN = "site_plan"
    ROOF_PLAN = "roof_plan"
    OTHER = "other"


@dataclass(frozen=True, slots=True)
class TextItem:
    """A text fragment together with its position on the page."""

    text: str
    x: float
    y: float
    font_size: float = 0.0


@dataclass(frozen=True, slots=True)
class PageImage:
    """Rendered raster of a page; ``image_ref`` is opaque to the pipeline."""

    page_number: int
    image_ref: str
    width: int
    height: int
    dpi: int
    size_bytes: int = 0


@dataclass(frozen=True, slots=True)
class Page:
    """Represents a single page of the source document."""

    page_number: int
    raw_text: str
    text_items: Tuple[TextItem, ...] = ()
    rendered_image: Optional[PageImage] = None
    rotation: int = 0
    width_inches: Optional[float] = None
    height_inches: Optional[float] = None

    @property
    def has_text_layer(self) -> bool:
        return len(self.raw_text) > 0


@dataclass(frozen=True, slots=True)
class IngestWarning:
    """A degraded condition that did not stop the job."""

    code: str
    message: str
    page_number: Optional[int] = None


@dataclass(frozen=True, slots=True)
class DocumentExtraction:
    pages: Tuple[Page, ...]
    warnings: Tuple[IngestWarning, ...] = ()

    @property
    def images_extracted(self) -> int:
        return sum(1 for page in self.pages if page.rendered_image is not None)


@dataclass(frozen=True, slots=True)
class SheetIndexEntry:
    """Metadata inferred for one page/sheet of the plan set."""

    sheet_id: str
    title: str
    discipline: SheetDiscipline
    sheet_type: SheetType
    scale: Optional[str]
    scale_ratio: Optional[float]
    units: Optional[str]
    page_number: int
    rotation: int
    has_text_layer: bool
    has_image: bool
    text_length: int
    detected_keywords: Tuple[str, ...] = ()
    width_inches: Optional[float] = None
    height_inches: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["discipline"] = self.discipline.value
        payload["sheet_type"] = self.sheet_type.value
        payload["detected_keywords"] = list(self.detected_keywords)
        return payload


@dataclass(frozen=True, slots=True)
class PlanSetGroup:
    """Logical cluster of sheets sharing a sheet type and discipline."""

    group_id: str
    name: str
    sheet_type: SheetType
    discipline: SheetDiscipline
    page_numbers: Tuple[int, ...]
    sheet_ids: Tuple[str, ...]
    scale: Optional[str]
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "group_id": self.group_id,
            "name": self.name,
            "sheet_type": self.sheet_type.value,
            "discipline": self.discipline.value,
            "page_numbers": list(self.page_numbers),
            "sheet_ids": list(self.sheet_ids),
            "scale": self.scale,
            "description": self.description,
        }


@dataclass(frozen=True, slots=True)
class Anchor:
    """Reference point inside a chunk pointing back to a sheet or a page."""

    anchor_id: str
    type: str
    value: str | int
    description: str
    page_number: int


@dataclass(frozen=True, slots=True)
class PageRange:
    start: int
    end: int
    pages: Tuple[int, ...]


@dataclass(frozen=True, slots=True)
class OverlapInfo:
    prev_chunk_id: Optional[str] = None
    next_chunk_id: Optional[str] = None
    overlap_tokens: int = 0
    overlap_chars: int = 0
    carried_sheet_id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class Safeguards:
    dedupe_hash: Optional[str] = None
    location_keys: Tuple[str, ...] = ()
    quantity_signatures: Tuple[str, ...] = ()
    no_multiply_hints: Tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class Chunk:
    """A packed, token-budgeted span of consecutive pages."""

    chunk_id: str
    document_id: str
    chunk_index: int
    page_range: PageRange
    sheet_index_subset: Tuple[SheetIndexEntry, ...]
    text: str
    token_count: int
    image_refs: Tuple[str, ...] = ()
    anchors: Tuple[Anchor, ...] = ()
    overlap_info: OverlapInfo = field(default_factory=OverlapInfo)
    safeguards: Safeguards = field(default_factory=Safeguards)
    discipline: SheetDiscipline = SheetDiscipline.UNKNOWN
    sheet_scale_units: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Serialise the chunk into nested plain structures."""

        return {
            "chunk_id": self.chunk_id,
            "document_id": self.document_id,
            "chunk_index": self.chunk_index,
            "page_range": {
                "start": self.page_range.start,
                "end": self.page_range.end,
                "pages": list(self.page_range.pages),
            },
            "sheet_index_subset": [entry.to_dict() for entry in self.sheet_index_subset],
            "text": self.text,
            "token_count": self.token_count,
            "image_refs": list(self.image_refs),
            "anchors": [asdict(anchor) for anchor in self.anchors],
            "overlap_info": asdict(self.overlap_info),
            "safeguards": {
                "dedupe_hash": self.safeguards.dedupe_hash,
                "location_keys": list(self.safeguards.location_keys),
                "quantity_signatures": list(self.safeguards.quantity_signatures),
                "no_multiply_hints": list(self.safeguards.no_multiply_hints),
            },
            "discipline": self.discipline.value,
            "sheet_scale_units": self.sheet_scale_units,
        }


@dataclass(frozen=True, slots=True)
class ProjectMeta:
    """Project level facts detected from the leading title pages."""

    document_id: str
    file_name: str
    total_pages: int
    detected_projects: Tuple[str, ...] = ()
    detected_addresses: Tuple[str, ...] = ()
    language: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_id": self.document_id,
            "file_name": self.file_name,
            "total_pages": self.total_pages,
            "detected_projects": list(self.detected_projects),
            "detected_addresses": list(self.detected_addresses),
            "language": self.language,
        }
