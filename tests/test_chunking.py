from __future__ import annotations

import pytest

from plan_ingest.config import ChunkingConfig
from plan_ingest.ingest.chunking import ChunkPacker, estimate_tokens, extract_overlap
from plan_ingest.ingest.models import SheetDiscipline, SheetType
from plan_ingest.ingest.safeguards import SCHEDULE_HINT, SafeguardAnnotator

SMALL_CONFIG = ChunkingConfig(target_tokens=100, min_tokens=50, max_tokens=150, overlap_percent=20)


def _notes_text() -> str:
    return "\n".join(f"NOTE {index}: VERIFY DIMENSIONS ON SITE." for index in range(6))


@pytest.fixture
def six_pages(page_factory, entry_factory):
    pages = [page_factory(number, _notes_text(), image=number % 2 == 1) for number in range(1, 7)]
    entries = [entry_factory(number) for number in range(1, 7)]
    return pages, entries


def test_estimate_tokens_uses_four_characters_per_token() -> None:
    assert estimate_tokens("") == 0
    assert estimate_tokens("abc") == 0
    assert estimate_tokens("abcd" * 10) == 10


def test_overlap_tail_starts_after_sentence_boundary() -> None:
    text = "alpha beta gamma.\ndelta epsilon zeta"

    tail = extract_overlap(text, overlap_tokens=5)

    assert tail == "delta epsilon zeta"
    assert text.endswith(tail)


def test_overlap_tail_falls_back_to_word_boundary() -> None:
    text = "word " * 100

    tail = extract_overlap(text.strip(), overlap_tokens=10)

    assert tail.startswith("word")
    assert text.strip().endswith(tail)
    assert len(tail) <= 40


def test_overlap_tail_uses_whole_short_text() -> None:
    assert extract_overlap("short note", overlap_tokens=50) == "short note"
    assert extract_overlap("short note", overlap_tokens=0) == ""


def test_pages_are_packed_without_splitting(six_pages) -> None:
    pages, entries = six_pages

    chunks = ChunkPacker(SMALL_CONFIG).pack(pages, entries, document_id="doc-1")

    assert [chunk.page_range.pages for chunk in chunks] == [(1, 2), (3, 4), (5, 6)]
    covered = [number for chunk in chunks for number in chunk.page_range.pages]
    assert covered == [1, 2, 3, 4, 5, 6]
    assert [chunk.chunk_index for chunk in chunks] == [0, 1, 2]
    for chunk in chunks:
        assert chunk.page_range.start == chunk.page_range.pages[0]
        assert chunk.page_range.end == chunk.page_range.pages[-1]
        assert chunk.token_count == estimate_tokens(chunk.text)
        assert chunk.token_count <= SMALL_CONFIG.max_tokens


def test_chunks_are_linked_in_order(six_pages) -> None:
    pages, entries = six_pages

    chunks = ChunkPacker(SMALL_CONFIG).pack(pages, entries, document_id="doc-1")

    assert chunks[0].overlap_info.prev_chunk_id is None
    assert chunks[-1].overlap_info.next_chunk_id is None
    for previous, current in zip(chunks, chunks[1:]):
        assert previous.overlap_info.next_chunk_id == current.chunk_id
        assert current.overlap_info.prev_chunk_id == previous.chunk_id


def test_next_chunk_starts_with_overlap_and_carried_sheet(six_pages) -> None:
    pages, entries = six_pages

    chunks = ChunkPacker(SMALL_CONFIG).pack(pages, entries, document_id="doc-1")

    first, second = chunks[0], chunks[1]
    tail = extract_overlap(first.text, SMALL_CONFIG.overlap_tokens)
    assert tail == "NOTE 4: VERIFY DIMENSIONS ON SITE.\nNOTE 5: VERIFY DIMENSIONS ON SITE."
    assert second.text.startswith(tail)
    assert second.overlap_info.overlap_chars == len(tail)
    assert second.overlap_info.carried_sheet_id == "A-2"
    assert [entry.sheet_id for entry in second.sheet_index_subset] == ["A-2", "A-3", "A-4"]
    assert second.page_range.pages == (3, 4)
    assert second.overlap_info.overlap_tokens == 20
    assert first.overlap_info.overlap_chars == 0
    assert first.overlap_info.carried_sheet_id is None
    assert "=== PAGE 3 (A-3: FLOOR PLAN) ===" in second.text


def test_chunk_references_and_anchors(six_pages) -> None:
    pages, entries = six_pages

    chunks = ChunkPacker(SMALL_CONFIG).pack(pages, entries, document_id="doc-1")

    first = chunks[0]
    assert first.image_refs == ("memory://doc/page-1.png",)
    assert [anchor.type for anchor in first.anchors] == ["sheet_id", "page", "sheet_id", "page"]
    assert [anchor.value for anchor in first.anchors] == ["A-1", 1, "A-2", 2]
    assert len({anchor.anchor_id for anchor in first.anchors}) == 4
    assert [entry.sheet_id for entry in first.sheet_index_subset] == ["A-1", "A-2"]
    assert first.sheet_scale_units == "Scale not detected"


def test_chunk_ids_are_deterministic(six_pages) -> None:
    pages, entries = six_pages
    packer = ChunkPacker(SMALL_CONFIG)

    first_run = [chunk.chunk_id for chunk in packer.pack(pages, entries, document_id="doc-1")]
    second_run = [chunk.chunk_id for chunk in packer.pack(pages, entries, document_id="doc-1")]
    other_document = [chunk.chunk_id for chunk in packer.pack(pages, entries, document_id="doc-2")]

    assert first_run == second_run
    assert len(set(first_run)) == len(first_run)
    assert set(first_run).isdisjoint(other_document)


def test_oversized_page_becomes_its_own_chunk(page_factory, entry_factory) -> None:
    pages = [
        page_factory(1, "GENERAL NOTES FOR THE PROJECT APPLY TO ALL SHEETS."),
        page_factory(2, "LONG SPECIFICATION TEXT. " * 40),
        page_factory(3, "CLOSING NOTES."),
    ]
    entries = [entry_factory(number) for number in (1, 2, 3)]

    chunks = ChunkPacker(SMALL_CONFIG).pack(pages, entries, document_id="doc-1")

    assert [chunk.page_range.pages for chunk in chunks] == [(1,), (2,), (3,)]
    assert chunks[1].token_count > SMALL_CONFIG.max_tokens
    assert "LONG SPECIFICATION TEXT." in chunks[1].text


def test_small_final_chunk_is_kept(page_factory, entry_factory) -> None:
    pages = [page_factory(1, _notes_text()), page_factory(2, _notes_text()), page_factory(3, "END.")]
    entries = [entry_factory(number) for number in (1, 2, 3)]

    chunks = ChunkPacker(SMALL_CONFIG).pack(pages, entries, document_id="doc-1")

    assert [chunk.page_range.pages for chunk in chunks] == [(1, 2), (3,)]
    assert chunks[-1].token_count < SMALL_CONFIG.min_tokens


def test_single_page_document(page_factory, entry_factory) -> None:
    chunks = ChunkPacker().pack([page_factory(1, "A-0 TITLE SHEET")], [entry_factory(1)], document_id="doc-1")

    assert len(chunks) == 1
    assert chunks[0].overlap_info.prev_chunk_id is None
    assert chunks[0].overlap_info.next_chunk_id is None


def test_empty_document_yields_no_chunks() -> None:
    assert ChunkPacker().pack([], [], document_id="doc-1") == []


def test_missing_sheet_entry_is_rejected(page_factory, entry_factory) -> None:
    with pytest.raises(ValueError):
        ChunkPacker().pack([page_factory(1, "A"), page_factory(2, "B")], [entry_factory(1)], document_id="doc-1")


def test_scales_are_summarised(page_factory, entry_factory) -> None:
    pages = [page_factory(1, "A"), page_factory(2, "B"), page_factory(3, "C")]
    entries = [
        entry_factory(1, scale="1/8\"=1'-0\""),
        entry_factory(2, scale="1/8\"=1'-0\""),
        entry_factory(3, scale="1/4\"=1'-0\""),
    ]

    (chunk,) = ChunkPacker().pack(pages, entries, document_id="doc-1")

    assert chunk.sheet_scale_units == "1/8\"=1'-0\" (imperial), 1/4\"=1'-0\" (imperial)"


def test_schedule_quantities_in_overlap_keep_their_safeguards(page_factory, entry_factory) -> None:
    pages = [
        page_factory(1, _notes_text()),
        page_factory(2, f"{_notes_text()}\nQTY: 12"),
        page_factory(3, "FLOOR PLAN LEVEL 1"),
    ]
    entries = [
        entry_factory(1),
        entry_factory(
            2,
            "S-1",
            sheet_type=SheetType.SCHEDULE,
            discipline=SheetDiscipline.STRUCTURAL,
            title="DOOR SCHEDULE",
        ),
        entry_factory(3),
    ]

    chunks = ChunkPacker(SMALL_CONFIG).pack(pages, entries, document_id="doc-1")
    annotator = SafeguardAnnotator()
    first, second = (annotator.annotate(chunk) for chunk in chunks)

    assert first.page_range.pages == (1, 2)
    assert second.page_range.pages == (3,)
    assert "QTY: 12" in second.text
    assert second.overlap_info.carried_sheet_id == "S-1"
    assert [entry.sheet_id for entry in second.sheet_index_subset] == ["S-1", "A-3"]
    assert "qty_12" in second.safeguards.quantity_signatures
    assert SCHEDULE_HINT in second.safeguards.no_multiply_hints
    assert second.safeguards.location_keys == ("S-1", "A-3")
    assert "S-1" in [anchor.value for anchor in second.anchors]
    assert second.discipline is SheetDiscipline.ARCHITECTURAL


def test_no_carried_sheet_without_overlap_text(six_pages) -> None:
    pages, entries = six_pages
    config = ChunkingConfig(target_tokens=100, min_tokens=50, max_tokens=150, overlap_percent=0)

    chunks = ChunkPacker(config).pack(pages, entries, document_id="doc-1")

    for chunk in chunks:
        assert chunk.overlap_info.carried_sheet_id is None
        assert [entry.page_number for entry in chunk.sheet_index_subset] == list(chunk.page_range.pages)


def test_overlap_is_trimmed_to_keep_pages_under_max(page_factory, entry_factory) -> None:
    long_notes = "\n".join(f"NOTE {index}: VERIFY DIMENSIONS ON SITE." for index in range(12))
    pages = [page_factory(1, long_notes), page_factory(2, "DIMENSION STRING. " * 30)]
    entries = [entry_factory(1), entry_factory(2)]
    packer = ChunkPacker(SMALL_CONFIG)
    assert all(
        estimate_tokens(packer.render_page(page, entry)) <= SMALL_CONFIG.max_tokens
        for page, entry in zip(pages, entries)
    )

    chunks = packer.pack(pages, entries, document_id="doc-1")

    assert [chunk.page_range.pages for chunk in chunks] == [(1,), (2,)]
    assert all(chunk.token_count <= SMALL_CONFIG.max_tokens for chunk in chunks)
    full_tail = extract_overlap(chunks[0].text, SMALL_CONFIG.overlap_tokens)
    assert 0 < chunks[1].overlap_info.overlap_chars < len(full_tail)
    assert chunks[1].overlap_info.carried_sheet_id == "A-1"
    assert chunks[1].text.endswith(packer.render_page(pages[1], entries[1]))
