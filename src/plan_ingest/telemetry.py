"""Structured events for document ingestion: lifecycle, stages, downloads and failures."""

from __future__ import annotations

import logging
import time
import traceback
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from .logging_config import current_document

LOGGER = logging.getLogger("plan_ingest.telemetry")


def log_event(
    logger: Optional[logging.Logger],
    step: str,
    *,
    level: str = "info",
    document_id: str | None = None,
    duration_ms: float | None = None,
    exc: BaseException | str | None = None,
    details: dict[str, Any] | None = None,
    **payload: Any,
) -> None:
    """Log ``step`` as a dict message.

    ``document_id`` falls back to the one bound with
    :func:`plan_ingest.logging_config.bind_document`.
    """

    target = logger or LOGGER
    document_id = document_id or current_document()
    event: dict[str, Any] = {"step": step, "module": target.name}
    optional = {
        "document_id": document_id or None,
        "duration_ms": None if duration_ms is None else round(duration_ms, 3),
        "details": details,
    }
    event.update((key, value) for key, value in optional.items() if value is not None)
    event.update(payload)

    exc_info = None
    if isinstance(exc, BaseException):
        event["exc"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        exc_info = (type(exc), exc, exc.__traceback__)
    elif exc is not None:
        event["exc"] = str(exc)

    target.log(logging.getLevelName(level.upper()), event, exc_info=exc_info)


def emit_ingest_event(
    step: str,
    *,
    document_id: str,
    file_name: str | None = None,
    size_bytes: int | None = None,
    duration_ms: float | None = None,
    pages: int | None = None,
    chunks: int | None = None,
    images: int | None = None,
    warnings: int | None = None,
) -> None:
    """Document level start/complete event with the counts known at that point."""

    counts = {"pages": pages, "chunks": chunks, "images": images, "warnings": warnings}
    details = {"file": file_name, "size_bytes": size_bytes}
    details.update((key, value) for key, value in counts.items() if value is not None)
    log_event(LOGGER, step, document_id=document_id, duration_ms=duration_ms, details=details)


def emit_stage_event(document_id: str, stage: str, *, progress: int) -> None:
    log_event(
        LOGGER,
        f"ingest.stage.{stage}",
        level="debug",
        document_id=document_id,
        details={"progress": progress},
    )


def emit_fetch_event(
    step: str,
    *,
    storage_path: str,
    attempt: int | None = None,
    size_bytes: int | None = None,
    error: BaseException | None = None,
) -> None:
    """Download progress for one storage object; failed attempts log at warning."""

    details: dict[str, Any] = {"storage_path": storage_path}
    if attempt is not None:
        details["attempt"] = attempt
    if size_bytes is not None:
        details["size_bytes"] = size_bytes
    log_event(
        LOGGER,
        step,
        level="warning" if error is not None else "info",
        details=details,
        exc=str(error) if error is not None else None,
    )


def emit_exception(
    *,
    module: str,
    error: BaseException,
    document_id: str | None = None,
    suggestion: str | None = None,
) -> None:
    details = {"module": module, "code": getattr(error, "code", None) or "internal_error"}
    if suggestion:
        details["suggestion"] = suggestion
    log_event(LOGGER, "ingest.exception", level="error", document_id=document_id, details=details, exc=error)


@contextmanager
def traced_duration(step: str, *, logger: Optional[logging.Logger] = None, **fields: Any) -> Iterator[None]:
    """Debug ``<step>.start`` and ``<step>.complete`` events around a block.

    A failing block also logs ``<step>.error`` before the exception propagates.
    """

    target = logger or LOGGER
    started = time.perf_counter()
    log_event(target, f"{step}.start", level="debug", details=fields)
    try:
        yield
    except Exception as error:
        log_event(target, f"{step}.error", level="warning", details=fields, exc=str(error))
        raise
    finally:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        log_event(target, f"{step}.complete", level="debug", duration_ms=elapsed_ms, details=fields)


__all__ = [
    "emit_exception",
    "emit_fetch_event",
    "emit_ingest_event",
    "emit_stage_event",
    "log_event",
    "traced_duration",
]
