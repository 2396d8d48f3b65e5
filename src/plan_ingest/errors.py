"""Exceptions raised by the ingestion pipeline and its collaborators."""
from __future__ import annotations


class IngestionError(RuntimeError):
    """Base class for fatal ingestion failures.

    Every subclass carries a stable machine readable ``code`` that the API layer
    returns to callers alongside the human readable message.
    """

    code = "ingestion_failed"

    def __init__(self, message: str, *, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.__cause__ = cause

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": str(self)}


class SourceFetchError(IngestionError):
    """Raised when the source document could not be downloaded after all retries."""

    code = "source_fetch_failed"


class DocumentTooLargeError(IngestionError):
    """Raised when a document exceeds the configured size ceiling."""

    code = "document_too_large"

    def __init__(self, size_bytes: int, max_bytes: int) -> None:
        super().__init__(f"Document is {size_bytes} bytes; the maximum is {max_bytes} bytes")
        self.size_bytes = size_bytes
        self.max_bytes = max_bytes


class ContentTypeMismatchError(IngestionError):
    """Raised when the source is not a PDF document."""

    code = "content_type_mismatch"


class DocumentUnreadableError(IngestionError):
    """Raised when no page of the document could be opened."""

    code = "document_unreadable"


class IngestionCancelledError(IngestionError):
    """Raised at the next checkpoint after a job's cancellation signal is set."""

    code = "ingestion_cancelled"


class IngestionInProgressError(IngestionError):
    """Raised when a document is submitted while it is still being processed."""

    code = "ingestion_in_progress"


class PersistenceError(IngestionError):
    """Raised when sheet index or chunk rows cannot be stored."""

    code = "persistence_failed"


class InvalidOptionsError(IngestionError, ValueError):
    """Raised when ingestion options are inconsistent."""

    code = "invalid_options"
