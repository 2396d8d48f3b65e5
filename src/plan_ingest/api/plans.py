"""API router exposing plan ingestion, progress and chunk retrieval endpoints."""
from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile
from pydantic import BaseModel, Field

from plan_ingest.config import IngestionOptions
from plan_ingest.errors import (
    ContentTypeMismatchError,
    DocumentTooLargeError,
    DocumentUnreadableError,
    IngestionCancelledError,
    IngestionError,
    IngestionInProgressError,
    InvalidOptionsError,
    PersistenceError,
    SourceFetchError,
)
from plan_ingest.services.ingestion import IngestionSummary, PlanIngestionService, get_ingestion_service

router = APIRouter(prefix="/plans", tags=["plans"])

MAX_PAGE_SIZE = 100

_ERROR_STATUS = (
    (SourceFetchError, 502),
    (DocumentTooLargeError, 413),
    (ContentTypeMismatchError, 415),
    (DocumentUnreadableError, 422),
    (IngestionCancelledError, 409),
    (IngestionInProgressError, 409),
    (InvalidOptionsError, 400),
    (PersistenceError, 500),
)


class IngestOptionsModel(BaseModel):
    """Optional chunking and rendering overrides."""

    target_chunk_size_tokens: Optional[int] = Field(None, ge=1)
    overlap_percentage: Optional[float] = Field(None, ge=0, lt=100)
    max_chunk_size_tokens: Optional[int] = Field(None, ge=1)
    min_chunk_size_tokens: Optional[int] = Field(None, ge=1)
    enable_dedupe: Optional[bool] = None
    enable_image_extraction: Optional[bool] = None
    image_dpi: Optional[int] = Field(None, ge=1, le=1200)


class IngestRequest(BaseModel):
    """Request body accepted by the ingest endpoint."""

    file_path: str = Field(..., min_length=1, description="Storage path or public URL of the plan PDF.")
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    options: Optional[IngestOptionsModel] = None


class ChunkPreviewModel(BaseModel):
    chunk_id: str
    chunk_index: int
    page_start: int
    page_end: int
    token_count: int
    sheet_count: int


class WarningModel(BaseModel):
    code: str
    message: str
    page_number: Optional[int] = None


class IngestResponse(BaseModel):
    """Summary of a completed ingestion."""

    status: str
    document_id: str
    total_pages: int
    total_chunks: int
    sheet_index_count: int
    images_extracted: int
    average_chunk_size_tokens: float
    processing_time_ms: float
    reprocessed_chunks: int
    sheet_index: list[dict[str, Any]]
    plan_set_groups: list[dict[str, Any]]
    chunk_preview: list[ChunkPreviewModel]
    project_meta: dict[str, Any]
    warnings: list[WarningModel]


class StatusResponse(BaseModel):
    document_id: str
    stage: str
    progress: int
    current_step: str
    error: Optional[dict[str, str]] = None
    started_at: str
    updated_at: str
    completed_at: Optional[str] = None
    stats: Optional[dict[str, Any]] = None


class CancelResponse(BaseModel):
    document_id: str
    cancelled: bool


class ChunkListResponse(BaseModel):
    document_id: str
    page: int
    limit: int
    total: int
    total_pages: int
    chunks: list[dict[str, Any]]


class SheetIndexResponse(BaseModel):
    document_id: str
    sheets: list[dict[str, Any]]


def _http_error(exc: IngestionError) -> HTTPException:
    status_code = next((code for error_type, code in _ERROR_STATUS if isinstance(exc, error_type)), 500)
    return HTTPException(status_code=status_code, detail=exc.to_dict())


def _not_found(code: str, message: str) -> HTTPException:
    return HTTPException(status_code=404, detail={"code": code, "message": message})


def _build_options(model: Optional[IngestOptionsModel]) -> IngestionOptions:
    if model is None:
        return IngestionOptions()
    return IngestionOptions.from_mapping(model.model_dump(exclude_none=True))


def _serialise_summary(summary: IngestionSummary) -> IngestResponse:
    return IngestResponse(status="ok", **summary.to_dict())


def _strip_images(row: dict[str, Any]) -> dict[str, Any]:
    content = dict(row.get("content") or {})
    content.pop("image_refs", None)
    return {**row, "content": content}


@router.post("/{document_id}/ingest", response_model=IngestResponse)
async def ingest_plan(
    document_id: str,
    request: IngestRequest,
    service: PlanIngestionService = Depends(get_ingestion_service),
) -> IngestResponse:
    """Download a stored plan PDF and ingest it."""

    try:
        options = _build_options(request.options)
        summary = await service.ingest(
            document_id,
            request.file_path,
            file_name=request.file_name,
            mime_type=request.mime_type,
            options=options,
        )
    except IngestionError as exc:
        raise _http_error(exc) from exc
    return _serialise_summary(summary)


@router.post("/{document_id}/upload", response_model=IngestResponse)
async def upload_plan(
    document_id: str,
    file: UploadFile = File(...),
    service: PlanIngestionService = Depends(get_ingestion_service),
) -> IngestResponse:
    """Ingest a plan PDF posted as multipart form data."""

    max_bytes = service.settings.max_document_bytes
    if file.size is not None and file.size > max_bytes:
        raise _http_error(DocumentTooLargeError(file.size, max_bytes))
    data = await file.read(max_bytes + 1)
    if len(data) > max_bytes:
        raise _http_error(DocumentTooLargeError(len(data), max_bytes))
    if not data:
        raise HTTPException(status_code=400, detail={"code": "empty_upload", "message": "Uploaded file is empty"})
    try:
        summary = await service.ingest_bytes(
            document_id,
            data,
            file_name=file.filename or "upload.pdf",
            mime_type=file.content_type,
        )
    except IngestionError as exc:
        raise _http_error(exc) from exc
    return _serialise_summary(summary)


@router.get("/{document_id}/status", response_model=StatusResponse)
def plan_status(
    document_id: str,
    service: PlanIngestionService = Depends(get_ingestion_service),
) -> StatusResponse:
    status = service.get_status(document_id)
    if status is None:
        raise _not_found("status_not_found", f"No ingestion recorded for {document_id}")
    return StatusResponse(**status)


@router.post("/{document_id}/cancel", response_model=CancelResponse)
def cancel_plan(
    document_id: str,
    service: PlanIngestionService = Depends(get_ingestion_service),
) -> CancelResponse:
    if not service.cancel(document_id):
        raise _not_found("job_not_running", f"No running ingestion for {document_id}")
    return CancelResponse(document_id=document_id, cancelled=True)


@router.get("/{document_id}/chunks", response_model=ChunkListResponse)
def list_chunks(
    document_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1),
    discipline: Optional[str] = None,
    sheet_type: Optional[str] = None,
    include_images: bool = False,
    service: PlanIngestionService = Depends(get_ingestion_service),
) -> ChunkListResponse:
    """Paginated chunk rows, optionally filtered by discipline or sheet type."""

    limit = min(limit, MAX_PAGE_SIZE)
    rows, total = service.repository.list_chunks(
        document_id,
        discipline=discipline,
        sheet_type=sheet_type,
        offset=(page - 1) * limit,
        limit=limit,
    )
    if not include_images:
        rows = [_strip_images(row) for row in rows]
    return ChunkListResponse(
        document_id=document_id,
        page=page,
        limit=limit,
        total=total,
        total_pages=(total + limit - 1) // limit,
        chunks=rows,
    )


@router.get("/{document_id}/chunks/{chunk_id}")
def get_chunk(
    document_id: str,
    chunk_id: str,
    service: PlanIngestionService = Depends(get_ingestion_service),
) -> dict[str, Any]:
    row = service.repository.get_chunk(document_id, chunk_id)
    if row is None:
        raise _not_found("chunk_not_found", f"Chunk {chunk_id} not found for {document_id}")
    return row


@router.get("/{document_id}/sheets", response_model=SheetIndexResponse)
def get_sheet_index(
    document_id: str,
    service: PlanIngestionService = Depends(get_ingestion_service),
) -> SheetIndexResponse:
    sheets = service.repository.get_sheet_index(document_id)
    if not sheets:
        raise _not_found("sheet_index_not_found", f"No sheet index stored for {document_id}")
    return SheetIndexResponse(document_id=document_id, sheets=sheets)
