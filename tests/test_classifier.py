from __future__ import annotations

import pytest

from plan_ingest.ingest.classifier import SheetClassifier, detect_units, parse_scale
from plan_ingest.ingest.models import SheetDiscipline, SheetType


@pytest.mark.parametrize(
    ("text", "expected_scale", "expected_ratio"),
    (
        ("SCALE: 1/8\" = 1'-0\"", "1/8\" = 1'-0\"", 96),
        ("SCALE: 1/4\"=1'-0\"", "1/4\"=1'-0\"", 48),
        ("SITE PLAN 1\"=40'-0\"", "1\"=40'-0\"", 480),
        ("SCALE 1:100", "1:100", 100),
    ),
)
def test_parse_scale(text: str, expected_scale: str, expected_ratio: int) -> None:
    scale, ratio = parse_scale(text)

    assert scale == expected_scale
    assert ratio == expected_ratio


def test_parse_scale_without_notation() -> None:
    assert parse_scale("GENERAL NOTES") == (None, None)


def test_detect_units_prefers_scale_then_text() -> None:
    assert detect_units("", "1/8\" = 1'-0\"") == "imperial"
    assert detect_units("", "1:50") == "metric"
    assert detect_units("ALL DIMENSIONS IN MM", None) == "metric"
    assert detect_units("WALL HEIGHT 9'-6\"", None) == "imperial"
    assert detect_units("GENERAL NOTES", None) is None


def test_structural_prefix_beats_architectural_keyword(page_factory) -> None:
    page = page_factory(2, "S-101\nFOUNDATION PLAN\nSEE ARCHITECTURAL DRAWINGS")

    entry = SheetClassifier().classify(page, total_pages=5)

    assert entry.sheet_id == "S-101"
    assert entry.discipline is SheetDiscipline.STRUCTURAL
    assert entry.sheet_type is SheetType.FLOOR_PLAN
    assert entry.title == "FOUNDATION PLAN"


def test_first_page_is_title_sheet(page_factory) -> None:
    page = page_factory(1, "A-0\nELEVATIONS AND COVER")

    entry = SheetClassifier().classify(page, total_pages=3)

    assert entry.sheet_type is SheetType.TITLE
    assert entry.discipline is SheetDiscipline.ARCHITECTURAL


def test_keyword_discipline_when_identifier_missing(page_factory) -> None:
    page = page_factory(3, "ELECTRICAL LIGHTING LAYOUT")

    entry = SheetClassifier().classify(page, total_pages=3)

    assert entry.sheet_id == "PAGE-3"
    assert entry.discipline is SheetDiscipline.ELECTRICAL
    assert entry.sheet_type is SheetType.OTHER
    assert entry.detected_keywords == ("ELECTRICAL",)


def test_schedule_sheet_and_keywords(page_factory) -> None:
    page = page_factory(4, "A-601\nDOOR SCHEDULE\nQTY: 4")

    entry = SheetClassifier().classify(page, total_pages=5)

    assert entry.sheet_id == "A-601"
    assert entry.sheet_type is SheetType.SCHEDULE
    assert entry.detected_keywords == ("DOOR", "SCHEDULE")
    assert entry.scale is None
    assert entry.units is None


def test_classification_is_case_insensitive(page_factory) -> None:
    page = page_factory(2, "a-101 second floor plan")

    entry = SheetClassifier().classify(page, total_pages=2)

    assert entry.sheet_id == "A-101"
    assert entry.sheet_type is SheetType.FLOOR_PLAN
    assert entry.discipline is SheetDiscipline.ARCHITECTURAL


def test_identifier_with_period_is_normalised(page_factory) -> None:
    page = page_factory(2, "M.201 HVAC LAYOUT")

    entry = SheetClassifier().classify(page, total_pages=2)

    assert entry.sheet_id == "M-201"
    assert entry.discipline is SheetDiscipline.HVAC


def test_empty_page_degrades_to_defaults(page_factory) -> None:
    entry = SheetClassifier().classify(page_factory(2, ""), total_pages=2)

    assert entry.sheet_id == "PAGE-2"
    assert entry.discipline is SheetDiscipline.UNKNOWN
    assert entry.sheet_type is SheetType.OTHER
    assert entry.title == "Sheet 2"
    assert entry.scale is None
    assert entry.has_text_layer is False
    assert entry.text_length == 0


def test_has_image_reflects_rendered_image(page_factory) -> None:
    classifier = SheetClassifier()

    with_image = classifier.classify(page_factory(2, "A-2 ROOF PLAN", image=True), total_pages=2)
    without_image = classifier.classify(page_factory(2, "A-2 ROOF PLAN"), total_pages=2)

    assert with_image.has_image is True
    assert without_image.has_image is False
    assert with_image.sheet_type is SheetType.ROOF_PLAN


def test_classification_is_idempotent(page_factory) -> None:
    page = page_factory(2, "A-1\nFIRST FLOOR PLAN\nSCALE: 1/8\"=1'-0\"")
    classifier = SheetClassifier()

    assert classifier.classify(page, total_pages=2) == classifier.classify(page, total_pages=2)


def test_rule_tables_are_injectable(page_factory) -> None:
    import re

    classifier = SheetClassifier(sheet_type_rules=((re.compile(r"\bGRID\b"), SheetType.LEGEND),))

    entry = classifier.classify(page_factory(2, "A-3 STRUCTURAL GRID"), total_pages=3)

    assert entry.sheet_type is SheetType.LEGEND
