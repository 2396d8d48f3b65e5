from __future__ import annotations

from plan_ingest.ingest.grouping import disambiguate_sheet_ids, group_plan_sets
from plan_ingest.ingest.models import SheetDiscipline, SheetType


def test_groups_follow_first_appearance_and_page_order(entry_factory) -> None:
    entries = [
        entry_factory(1, "A-0", sheet_type=SheetType.TITLE),
        entry_factory(2, "A-1", scale="1/8\"=1'-0\""),
        entry_factory(3, "S-1", sheet_type=SheetType.SCHEDULE, discipline=SheetDiscipline.STRUCTURAL),
        entry_factory(4, "A-2", scale="1/8\"=1'-0\""),
    ]

    groups = group_plan_sets(entries)

    assert [group.group_id for group in groups] == [
        "title_architectural",
        "floor_plan_architectural",
        "schedule_structural",
    ]
    floor_plans = groups[1]
    assert floor_plans.page_numbers == (2, 4)
    assert floor_plans.sheet_ids == ("A-1", "A-2")
    assert floor_plans.scale == "1/8\"=1'-0\""
    assert floor_plans.name == "Floor Plan - Architectural"
    assert "2" in floor_plans.description


def test_group_scale_requires_agreement(entry_factory) -> None:
    entries = [
        entry_factory(2, "A-1", scale="1/8\"=1'-0\""),
        entry_factory(3, "A-2", scale="1/4\"=1'-0\""),
        entry_factory(4, "A-3"),
    ]

    (group,) = group_plan_sets(entries)

    assert group.scale is None
    assert group.page_numbers == (2, 3, 4)


def test_grouping_empty_index() -> None:
    assert group_plan_sets([]) == []


def test_disambiguate_duplicate_identifiers(entry_factory) -> None:
    entries = [entry_factory(2, "A-1"), entry_factory(4, "A-2"), entry_factory(7, "A-1")]

    result = disambiguate_sheet_ids(entries)

    assert [entry.sheet_id for entry in result] == ["A-1", "A-2", "A-1_p7"]
    assert result[0] is entries[0]
    assert entries[2].sheet_id == "A-1"


def test_disambiguate_avoids_existing_suffix(entry_factory) -> None:
    entries = [entry_factory(1, "A-1"), entry_factory(2, "A-1_p3"), entry_factory(3, "A-1")]

    result = disambiguate_sheet_ids(entries)

    assert [entry.sheet_id for entry in result] == ["A-1", "A-1_p3", "A-1_p3_2"]
