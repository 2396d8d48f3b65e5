"""Persistence of sheet index and chunk rows."""
from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from .errors import PersistenceError
from .ingest.models import Chunk, SheetIndexEntry

LOGGER = logging.getLogger(__name__)

Row = Dict[str, Any]


@dataclass(frozen=True, slots=True)
class PersistOutcome:
    sheets_written: int
    chunks_written: int
    reprocessed_chunks: int = 0


class PlanRepository(Protocol):
    """Storage for the rows produced by one ingestion."""

    def replace_document(self, document_id: str, sheet_rows: Sequence[Row], chunk_rows: Sequence[Row]) -> PersistOutcome:
        ...

    def list_chunks(
        self,
        document_id: str,
        *,
        discipline: Optional[str] = None,
        sheet_type: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Row], int]:
        ...

    def get_chunk(self, document_id: str, chunk_id: str) -> Optional[Row]:
        ...

    def get_sheet_index(self, document_id: str) -> List[Row]:
        ...


def build_sheet_rows(document_id: str, sheet_index: Sequence[SheetIndexEntry]) -> List[Row]:
    """One row per sheet; ``(document_id, sheet_id)`` must be unique."""

    rows: List[Row] = []
    seen = set()
    for entry in sheet_index:
        if entry.sheet_id in seen:
            raise PersistenceError(f"Duplicate sheet id {entry.sheet_id!r} for document {document_id}")
        seen.add(entry.sheet_id)
        rows.append({"document_id": document_id, **entry.to_dict()})
    return rows


def build_chunk_rows(document_id: str, chunks: Sequence[Chunk]) -> List[Row]:
    """One row per chunk keyed by ``(document_id, chunk_index)`` with the full chunk as content."""

    rows: List[Row] = []
    seen = set()
    for chunk in chunks:
        if chunk.chunk_index in seen:
            raise PersistenceError(f"Duplicate chunk index {chunk.chunk_index} for document {document_id}")
        seen.add(chunk.chunk_index)
        rows.append(
            {
                "document_id": document_id,
                "chunk_id": chunk.chunk_id,
                "chunk_index": chunk.chunk_index,
                "page_start": chunk.page_range.start,
                "page_end": chunk.page_range.end,
                "discipline": chunk.discipline.value,
                "sheet_types": sorted({entry.sheet_type.value for entry in chunk.sheet_index_subset}),
                "token_count": chunk.token_count,
                "dedupe_hash": chunk.safeguards.dedupe_hash,
                "content": chunk.to_dict(),
            }
        )
    return rows


def _validate_rows(document_id: str, rows: Sequence[Row], key: str) -> None:
    seen = set()
    for row in rows:
        if row.get("document_id") != document_id:
            raise PersistenceError(f"Row for {row.get('document_id')!r} submitted under document {document_id}")
        value = row.get(key)
        if value in seen:
            raise PersistenceError(f"Duplicate {key} {value!r} for document {document_id}")
        seen.add(value)


class InMemoryPlanRepository:
    """Thread-safe in-process repository replacing a document's rows atomically."""

    def __init__(self) -> None:
        self._sheets: Dict[str, List[Row]] = {}
        self._chunks: Dict[str, List[Row]] = {}
        self._lock = threading.Lock()

    def replace_document(self, document_id: str, sheet_rows: Sequence[Row], chunk_rows: Sequence[Row]) -> PersistOutcome:
        _validate_rows(document_id, sheet_rows, "sheet_id")
        _validate_rows(document_id, chunk_rows, "chunk_index")
        new_sheets = copy.deepcopy(list(sheet_rows))
        new_chunks = sorted(copy.deepcopy(list(chunk_rows)), key=lambda row: row["chunk_index"])

        with self._lock:
            known_hashes = {
                row.get("dedupe_hash") for row in self._chunks.get(document_id, []) if row.get("dedupe_hash")
            }
            reprocessed = sum(1 for row in new_chunks if row.get("dedupe_hash") in known_hashes)
            self._sheets[document_id] = new_sheets
            self._chunks[document_id] = new_chunks

        if reprocessed:
            LOGGER.info("Document %s reprocessed; %s chunks unchanged", document_id, reprocessed)
        return PersistOutcome(
            sheets_written=len(new_sheets),
            chunks_written=len(new_chunks),
            reprocessed_chunks=reprocessed,
        )

    def list_chunks(
        self,
        document_id: str,
        *,
        discipline: Optional[str] = None,
        sheet_type: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Row], int]:
        with self._lock:
            rows = list(self._chunks.get(document_id, []))
        if discipline:
            rows = [row for row in rows if row["discipline"] == discipline]
        if sheet_type:
            rows = [row for row in rows if sheet_type in row["sheet_types"]]
        page = rows[max(offset, 0) : max(offset, 0) + max(limit, 0)]
        return copy.deepcopy(page), len(rows)

    def get_chunk(self, document_id: str, chunk_id: str) -> Optional[Row]:
        with self._lock:
            for row in self._chunks.get(document_id, []):
                if row["chunk_id"] == chunk_id:
                    return copy.deepcopy(row)
        return None

    def get_sheet_index(self, document_id: str) -> List[Row]:
        with self._lock:
            rows = self._sheets.get(document_id, [])
            return sorted(copy.deepcopy(rows), key=lambda row: row["page_number"])
