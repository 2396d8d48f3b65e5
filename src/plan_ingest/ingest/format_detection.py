"""Content-type checks applied before a document is parsed."""
from __future__ import annotations

import mimetypes
from enum import Enum
from pathlib import Path
from typing import Optional

from ..errors import ContentTypeMismatchError

PDF_MAGIC = b"%PDF-"
# Some producers prepend junk before the header; PDF readers tolerate up to 1 KiB.
_MAGIC_SEARCH_WINDOW = 1024


class DocumentFormat(str, Enum):
    """Supported document formats."""

    PDF = "pdf"


class DocumentFormatDetector:
    """Detects the document format from MIME type, file name and content."""

    _MIME_MAP = {
        "application/pdf": DocumentFormat.PDF,
        "application/x-pdf": DocumentFormat.PDF,
    }
    _GENERIC_MIME_TYPES = {"application/octet-stream", "binary/octet-stream"}

    @classmethod
    def detect(
        cls,
        file_name: Optional[str],
        mime_type: Optional[str] = None,
        data: Optional[bytes] = None,
    ) -> DocumentFormat:
        """Return the detected document format.

        An explicit MIME type wins when it is specific; generic binary types fall
        through to ``mimetypes.guess_type`` and the file suffix. When ``data`` is
        given the PDF header must also be present.
        """

        declared = cls._clean_mime(mime_type)
        if not cls.accepts_mime(declared):
            raise ContentTypeMismatchError(f"Unsupported content type: {declared}")

        detected: Optional[DocumentFormat] = cls._MIME_MAP.get(declared or "")
        if detected is None and file_name:
            guessed_type, _ = mimetypes.guess_type(file_name)
            detected = cls._MIME_MAP.get(guessed_type or "")
            if detected is None and Path(file_name).suffix.lower() == ".pdf":
                detected = DocumentFormat.PDF

        if data is not None:
            if not cls.has_pdf_header(data):
                raise ContentTypeMismatchError("Document does not start with a PDF header")
            detected = DocumentFormat.PDF

        if detected is None:
            raise ContentTypeMismatchError(f"Unsupported file format: {file_name or '<unnamed>'}")
        return detected

    @classmethod
    def accepts_mime(cls, mime_type: Optional[str]) -> bool:
        """Whether a declared MIME type may still carry a PDF."""

        declared = cls._clean_mime(mime_type)
        return declared is None or declared in cls._MIME_MAP or declared in cls._GENERIC_MIME_TYPES

    @staticmethod
    def has_pdf_header(data: bytes) -> bool:
        return PDF_MAGIC in data[:_MAGIC_SEARCH_WINDOW]

    @staticmethod
    def _clean_mime(mime_type: Optional[str]) -> Optional[str]:
        if not mime_type:
            return None
        return mime_type.split(";", 1)[0].strip().lower() or None
