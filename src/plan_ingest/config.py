"""Immutable configuration values threaded through the ingestion service."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from .errors import InvalidOptionsError

LOGGER = logging.getLogger(__name__)

DEFAULT_TARGET_TOKENS = 3000
DEFAULT_MIN_TOKENS = 2000
DEFAULT_MAX_TOKENS = 4000
DEFAULT_OVERLAP_PERCENT = 17.5
DEFAULT_IMAGE_DPI = 300
DEFAULT_MAX_DOCUMENT_BYTES = 500 * 1024 * 1024


def _int_from_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        LOGGER.warning("Invalid integer for %s: %s; using default %s", name, value, default)
        return default


def _float_from_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        LOGGER.warning("Invalid float for %s: %s; using default %s", name, value, default)
        return default


@dataclass(frozen=True, slots=True)
class ChunkingConfig:
    target_tokens: int = DEFAULT_TARGET_TOKENS
    min_tokens: int = DEFAULT_MIN_TOKENS
    max_tokens: int = DEFAULT_MAX_TOKENS
    overlap_percent: float = DEFAULT_OVERLAP_PERCENT

    @property
    def overlap_tokens(self) -> int:
        return int(self.target_tokens * self.overlap_percent // 100)


@dataclass(frozen=True, slots=True)
class IngestionOptions:
    """Per-request knobs accepted by the ingestion pipeline."""

    target_chunk_size_tokens: int = DEFAULT_TARGET_TOKENS
    overlap_percentage: float = DEFAULT_OVERLAP_PERCENT
    max_chunk_size_tokens: int = DEFAULT_MAX_TOKENS
    min_chunk_size_tokens: int = DEFAULT_MIN_TOKENS
    enable_dedupe: bool = True
    enable_image_extraction: bool = True
    image_dpi: int = DEFAULT_IMAGE_DPI

    def __post_init__(self) -> None:
        if self.min_chunk_size_tokens <= 0:
            raise InvalidOptionsError("min_chunk_size_tokens must be positive")
        if not self.min_chunk_size_tokens <= self.target_chunk_size_tokens <= self.max_chunk_size_tokens:
            raise InvalidOptionsError(
                "Chunk sizes must satisfy min_chunk_size_tokens <= target_chunk_size_tokens "
                "<= max_chunk_size_tokens"
            )
        if not 0 <= self.overlap_percentage < 100:
            raise InvalidOptionsError("overlap_percentage must be within [0, 100)")
        if self.image_dpi <= 0:
            raise InvalidOptionsError("image_dpi must be positive")

    @classmethod
    def from_mapping(cls, values: Optional[Mapping[str, Any]]) -> "IngestionOptions":
        """Build options from a loose mapping, ignoring ``None`` values."""

        if not values:
            return cls()
        known = {name: value for name, value in values.items() if value is not None and name in cls.__dataclass_fields__}
        return cls(**known)

    def chunking_config(self) -> ChunkingConfig:
        return ChunkingConfig(
            target_tokens=self.target_chunk_size_tokens,
            min_tokens=self.min_chunk_size_tokens,
            max_tokens=self.max_chunk_size_tokens,
            overlap_percent=self.overlap_percentage,
        )


@dataclass(frozen=True, slots=True)
class ServiceSettings:
    """Deployment level settings, read once from the environment."""

    max_document_bytes: int = DEFAULT_MAX_DOCUMENT_BYTES
    worker_pool_size: int = 4
    fetch_timeout_seconds: float = 60.0
    fetch_max_attempts: int = 3
    fetch_backoff_seconds: float = 1.0
    storage_base_url: Optional[str] = None
    storage_bucket: str = "job-plans"
    signed_url_ttl_seconds: int = 300
    image_dir: Optional[str] = None

    @classmethod
    def from_env(cls) -> "ServiceSettings":
        return cls(
            max_document_bytes=_int_from_env("PLAN_MAX_DOCUMENT_BYTES", DEFAULT_MAX_DOCUMENT_BYTES),
            worker_pool_size=max(1, _int_from_env("PLAN_WORKER_POOL_SIZE", 4)),
            fetch_timeout_seconds=_float_from_env("PLAN_FETCH_TIMEOUT_SECONDS", 60.0),
            fetch_max_attempts=max(1, _int_from_env("PLAN_FETCH_MAX_ATTEMPTS", 3)),
            fetch_backoff_seconds=_float_from_env("PLAN_FETCH_BACKOFF_SECONDS", 1.0),
            storage_base_url=os.getenv("PLAN_STORAGE_BASE_URL") or None,
            storage_bucket=os.getenv("PLAN_STORAGE_BUCKET", "job-plans"),
            signed_url_ttl_seconds=_int_from_env("PLAN_SIGNED_URL_TTL_SECONDS", 300),
            image_dir=os.getenv("PLAN_IMAGE_DIR") or None,
        )
