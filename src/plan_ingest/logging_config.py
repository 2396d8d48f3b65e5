"""JSON logging, the ingestion audit trail and per-document log context."""

from __future__ import annotations

import contextvars
import json
import logging
import logging.config
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

AUDIT_LOGGER_NAME = "plan_ingest.ingest.audit"
AUDIT_FILE_NAME = "ingest_audit.log"

_current_document: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "plan_ingest_document_id", default=None
)


@contextmanager
def bind_document(document_id: str) -> Iterator[None]:
    """Tag every record logged inside the block with ``document_id``.

    The binding follows ``asyncio.to_thread`` but not plain worker pools.
    """

    token = _current_document.set(document_id)
    try:
        yield
    finally:
        _current_document.reset(token)


def current_document() -> Optional[str]:
    return _current_document.get()


class DocumentContextFilter(logging.Filter):
    """Copy the bound document id onto records that do not carry one."""

    def filter(self, record: logging.LogRecord) -> bool:
        document_id = _current_document.get()
        if document_id is not None and not hasattr(record, "document_id"):
            record.document_id = document_id
        return True


class MinimalJSONFormatter(logging.Formatter):
    """Serialize log records to a compact JSON string.

    Dict messages are merged into the top level object; anything passed via
    ``extra=`` (or set by :class:`DocumentContextFilter`) is appended.
    """

    _RESERVED_KEYS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
        "message",
        "asctime",
        "taskName",
    }

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - inherited
        log_record: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
        }

        if isinstance(record.msg, dict):
            log_record.update(record.msg)
        else:
            message = record.getMessage()
            if message:
                log_record["message"] = message

        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)

        log_record.update(
            (key, value)
            for key, value in record.__dict__.items()
            if key not in self._RESERVED_KEYS and not key.startswith("_")
        )
        return json.dumps(log_record, ensure_ascii=False, default=_json_default)


def _json_default(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return str(value)


def configure_logging(log_dir: str | Path | None = None) -> Path:
    """Configure JSON console logging and the audit file; return the audit path.

    ``PLAN_LOG_DIR`` picks the directory when ``log_dir`` is not given and
    ``LOG_LEVEL`` sets the root level.
    """

    directory = Path(log_dir or os.getenv("PLAN_LOG_DIR", "logs"))
    directory.mkdir(parents=True, exist_ok=True)
    audit_path = directory / AUDIT_FILE_NAME

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {"document": {"()": DocumentContextFilter}},
            "formatters": {"json": {"()": MinimalJSONFormatter}},
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "formatter": "json",
                    "filters": ["document"],
                },
                "ingest_audit": {
                    "class": "logging.FileHandler",
                    "filename": str(audit_path),
                    "mode": "a",
                    "encoding": "utf-8",
                    "formatter": "json",
                },
            },
            "root": {
                "level": os.getenv("LOG_LEVEL", "INFO").upper(),
                "handlers": ["default"],
            },
            "loggers": {
                AUDIT_LOGGER_NAME: {
                    "level": "INFO",
                    "handlers": ["ingest_audit"],
                    "propagate": False,
                }
            },
        }
    )
    return audit_path
