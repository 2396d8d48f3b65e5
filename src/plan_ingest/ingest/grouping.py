"""Document level projections over the sheet index."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Dict, List, Sequence, Tuple

from .models import PlanSetGroup, SheetDiscipline, SheetIndexEntry, SheetType


@dataclass(slots=True)
class _GroupAccumulator:
    sheet_type: SheetType
    discipline: SheetDiscipline
    entries: List[SheetIndexEntry] = field(default_factory=list)


def _humanize(value: str) -> str:
    return value.replace("_", " ").title()


def group_plan_sets(sheet_index: Sequence[SheetIndexEntry]) -> List[PlanSetGroup]:
    """Partition sheets by ``(sheet_type, discipline)``.

    Groups appear in order of their first sheet and keep page order inside.
    A group carries a scale only when every member declares the same one.
    """

    accumulators: Dict[Tuple[SheetType, SheetDiscipline], _GroupAccumulator] = {}
    for entry in sorted(sheet_index, key=lambda item: item.page_number):
        key = (entry.sheet_type, entry.discipline)
        if key not in accumulators:
            accumulators[key] = _GroupAccumulator(sheet_type=entry.sheet_type, discipline=entry.discipline)
        accumulators[key].entries.append(entry)

    groups: List[PlanSetGroup] = []
    for accumulator in accumulators.values():
        sheet_type = accumulator.sheet_type.value
        discipline = accumulator.discipline.value
        scales = {entry.scale for entry in accumulator.entries}
        common_scale = scales.pop() if len(scales) == 1 else None
        groups.append(
            PlanSetGroup(
                group_id=f"{sheet_type}_{discipline}",
                name=f"{_humanize(sheet_type)} - {_humanize(discipline)}",
                sheet_type=accumulator.sheet_type,
                discipline=accumulator.discipline,
                page_numbers=tuple(entry.page_number for entry in accumulator.entries),
                sheet_ids=tuple(entry.sheet_id for entry in accumulator.entries),
                scale=common_scale,
                description=(
                    f"Collection of {len(accumulator.entries)} {_humanize(sheet_type).lower()} "
                    f"sheet(s) for the {discipline} discipline"
                ),
            )
        )
    return groups


def disambiguate_sheet_ids(sheet_index: Sequence[SheetIndexEntry]) -> List[SheetIndexEntry]:
    """Make sheet identifiers unique within one document.

    The first occurrence keeps its identifier; later occurrences get the page
    number appended (``A-1`` on page 7 becomes ``A-1_p7``). Entries that do not
    collide are returned unchanged.
    """

    taken = set()
    result: List[SheetIndexEntry] = []
    for entry in sorted(sheet_index, key=lambda item: item.page_number):
        sheet_id = entry.sheet_id
        if sheet_id in taken:
            sheet_id = f"{entry.sheet_id}_p{entry.page_number}"
            suffix = 2
            while sheet_id in taken:
                sheet_id = f"{entry.sheet_id}_p{entry.page_number}_{suffix}"
                suffix += 1
            entry = replace(entry, sheet_id=sheet_id)
        taken.add(sheet_id)
        result.append(entry)
    return result
