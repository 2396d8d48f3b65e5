"""Destinations for rendered page images."""
from __future__ import annotations

import re
import shutil
import threading
from pathlib import Path
from typing import Dict, Final, Optional, Protocol

_FILENAME_SAFE_CHARS_RE: Final[re.Pattern[str]] = re.compile(r"[^A-Za-z0-9._-]+")


def _sanitize_component(value: str) -> str:
    """Return a filesystem-safe path component."""
    sanitized = Path(value or "").name
    sanitized = _FILENAME_SAFE_CHARS_RE.sub("_", sanitized)
    return sanitized.strip("._") or "document"


def image_file_name(page_number: int) -> str:
    return f"page-{page_number}.png"


class ImageStore(Protocol):
    """Stores a rendered page and returns an opaque reference to it."""

    def save(self, document_id: str, page_number: int, data: bytes) -> str:
        ...

    def delete(self, document_id: str) -> int:
        """Drop every image saved for ``document_id`` and return how many went."""
        ...


class InMemoryImageStore:
    """Keeps PNG bytes in process memory; used by default and in tests."""

    def __init__(self) -> None:
        self._images: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _prefix(document_id: str) -> str:
        return f"memory://{_sanitize_component(document_id)}/"

    def save(self, document_id: str, page_number: int, data: bytes) -> str:
        ref = f"{self._prefix(document_id)}{image_file_name(page_number)}"
        with self._lock:
            self._images[ref] = data
        return ref

    def delete(self, document_id: str) -> int:
        prefix = self._prefix(document_id)
        with self._lock:
            stale = [ref for ref in self._images if ref.startswith(prefix)]
            for ref in stale:
                del self._images[ref]
        return len(stale)

    def load(self, image_ref: str) -> bytes:
        with self._lock:
            return self._images[image_ref]

    def __len__(self) -> int:
        with self._lock:
            return len(self._images)


class LocalImageStore:
    """Writes page images under ``<base_dir>/<document_id>/page-N.png``."""

    def __init__(self, base_dir: str | Path) -> None:
        self.base_dir = Path(base_dir)

    def save(self, document_id: str, page_number: int, data: bytes) -> str:
        document_dir = self.base_dir / _sanitize_component(document_id)
        document_dir.mkdir(parents=True, exist_ok=True)
        destination = document_dir / image_file_name(page_number)
        destination.write_bytes(data)
        return str(destination.resolve())

    def delete(self, document_id: str) -> int:
        document_dir = self.base_dir / _sanitize_component(document_id)
        if not document_dir.is_dir():
            return 0
        removed = sum(1 for _ in document_dir.glob("page-*.png"))
        shutil.rmtree(document_dir)
        return removed


def build_image_store(image_dir: Optional[str]) -> ImageStore:
    if image_dir:
        return LocalImageStore(image_dir)
    return InMemoryImageStore()
