"""Download of source documents from object storage through signed URLs."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Callable, Optional, Protocol
from urllib.parse import quote, unquote, urlsplit

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from .config import ServiceSettings
from .errors import ContentTypeMismatchError, DocumentTooLargeError, SourceFetchError
from .ingest.format_detection import DocumentFormatDetector
from .telemetry import emit_fetch_event

FETCH_ERRORS = (httpx.TransportError, httpx.HTTPStatusError)
# Client errors worth another attempt; every 5xx is retried as well.
RETRYABLE_STATUS_CODES = frozenset({408, 429})


class SignedUrlProvider(Protocol):
    """Issues short lived download URLs for objects in the plan bucket."""

    async def create_signed_url(self, path: str, expires_in: int) -> str:
        ...


class StaticSignedUrlProvider:
    """Builds download URLs by joining a base URL, the bucket and the object path."""

    def __init__(self, base_url: Optional[str], bucket: str) -> None:
        self.base_url = base_url.rstrip("/") if base_url else None
        self.bucket = bucket

    async def create_signed_url(self, path: str, expires_in: int) -> str:
        if not self.base_url:
            raise SourceFetchError("No storage base URL is configured (set PLAN_STORAGE_BASE_URL)")
        return f"{self.base_url}/{self.bucket}/{quote(path)}?expires_in={expires_in}"


def resolve_storage_path(file_path: str, bucket: str) -> str:
    """Turn a stored file reference into a path inside ``bucket``.

    References may be bare object paths, bucket-qualified paths, or public
    object URLs such as ``https://host/storage/v1/object/public/<bucket>/a/b.pdf``.
    """

    path = file_path.strip()
    if path.startswith(("http://", "https://")):
        path = unquote(urlsplit(path).path)
    marker = f"/{bucket}/"
    if marker in path:
        path = path.split(marker, 1)[1]
    path = path.lstrip("/")
    if path.startswith(f"{bucket}/"):
        path = path[len(bucket) + 1 :]
    return path


@dataclass(frozen=True, slots=True)
class FetchedDocument:
    data: bytes
    content_type: Optional[str]
    file_name: str


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
        return status_code >= 500 or status_code in RETRYABLE_STATUS_CODES
    return False


def _retry_logger(storage_path: str) -> Callable[[RetryCallState], None]:
    def _log_retry(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        emit_fetch_event(
            "ingest.fetch.retry", storage_path=storage_path, attempt=retry_state.attempt_number, error=error
        )

    return _log_retry


class SourceFetcher:
    """Download plan PDFs with retry, timeout and size ceiling."""

    def __init__(
        self,
        settings: Optional[ServiceSettings] = None,
        url_provider: Optional[SignedUrlProvider] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        wait: Optional[wait_base] = None,
    ) -> None:
        self.settings = settings or ServiceSettings()
        self.url_provider = url_provider or StaticSignedUrlProvider(
            self.settings.storage_base_url, self.settings.storage_bucket
        )
        self.transport = transport
        backoff = self.settings.fetch_backoff_seconds
        self.wait = wait if wait is not None else wait_exponential(multiplier=backoff, max=backoff * 4)

    async def fetch(self, file_path: str) -> FetchedDocument:
        storage_path = resolve_storage_path(file_path, self.settings.storage_bucket)
        signed_url = await self.url_provider.create_signed_url(storage_path, self.settings.signed_url_ttl_seconds)
        file_name = PurePosixPath(storage_path).name or "document.pdf"
        attempts = self.settings.fetch_max_attempts
        attempts_made = 0

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(attempts),
                wait=self.wait,
                retry=retry_if_exception(is_retryable),
                before_sleep=_retry_logger(storage_path),
                reraise=True,
            ):
                with attempt:
                    attempts_made = attempt.retry_state.attempt_number
                    document = await self._download(signed_url, file_name)
        except FETCH_ERRORS as exc:
            raise SourceFetchError(
                f"Failed to download {storage_path} after {attempts_made} attempt(s): {exc}", cause=exc
            ) from exc

        emit_fetch_event("ingest.fetch.complete", storage_path=storage_path, size_bytes=len(document.data))
        return document

    async def _download(self, url: str, file_name: str) -> FetchedDocument:
        max_bytes = self.settings.max_document_bytes
        async with httpx.AsyncClient(
            timeout=self.settings.fetch_timeout_seconds,
            transport=self.transport,
            follow_redirects=True,
        ) as client:
            async with client.stream("GET", url) as response:
                response.raise_for_status()
                declared_length = response.headers.get("content-length", "")
                if declared_length.isdigit() and int(declared_length) > max_bytes:
                    raise DocumentTooLargeError(int(declared_length), max_bytes)
                content_type = response.headers.get("content-type")
                if not DocumentFormatDetector.accepts_mime(content_type):
                    raise ContentTypeMismatchError(f"Source is not a PDF (content type {content_type})")

                body = bytearray()
                async for part in response.aiter_bytes():
                    body.extend(part)
                    if len(body) > max_bytes:
                        raise DocumentTooLargeError(len(body), max_bytes)
        return FetchedDocument(data=bytes(body), content_type=content_type, file_name=file_name)
