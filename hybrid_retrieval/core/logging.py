"""Structured logging for the hybrid retrieval core.

Every record emitted while a search runs carries that search's id, so the
lines of one request (intent, both retrieval branches, fusion, provider
retries) can be grouped. Search-specific values passed via ``extra=``
(backend, fusion method, result counts, latency) become top-level JSON keys.

Handlers are only installed by configure_logging(); create_orchestrator()
calls it when ``Settings.log_json`` is set. Otherwise the package logs through
whatever the host application configured.
"""

import json
import logging
import os
import sys
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

PACKAGE_LOGGER = "hybrid_retrieval"

_SERVICE_NAME = "hybrid-retrieval"
_LEVEL_ENV_PREFIX = "HYBRID_RETRIEVAL"
_NO_SEARCH = "-"

# Keys copied from LogRecord attributes (set through ``extra=``) into the JSON line
SEARCH_FIELDS = (
    "backend",
    "fusion_method",
    "results",
    "vector_results",
    "text_results",
    "degraded",
    "latency_ms",
    "attempt",
    "status_code",
)

_search_id: ContextVar[str | None] = ContextVar("search_id", default=None)


# =============================================================================
# Search Id Binding
# =============================================================================


def bind_search_id(search_id: str) -> Token:
    """Bind ``search_id`` to the current task; returns the token for unbinding."""
    return _search_id.set(search_id)


def current_search_id() -> str | None:
    return _search_id.get()


def unbind_search_id(token: Token) -> None:
    """Restore the search id that was bound before bind_search_id()."""
    _search_id.reset(token)


class SearchContextFilter(logging.Filter):
    """Stamps records with the id of the search that emitted them."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.search_id = _search_id.get() or _NO_SEARCH
        return True


# =============================================================================
# Formatting
# =============================================================================


class JSONFormatter(logging.Formatter):
    """One JSON object per record.

    Always present: timestamp, level, service, logger, search_id, message.
    Added when set on the record: the SEARCH_FIELDS and ``exception``.
    """

    def __init__(self, service_name: str = _SERVICE_NAME, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service_name,
            "logger": record.name,
            "search_id": getattr(record, "search_id", _NO_SEARCH),
            "message": record.getMessage(),
        }
        for key in SEARCH_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


# =============================================================================
# Setup
# =============================================================================


def get_log_level_from_env(prefix: str = _LEVEL_ENV_PREFIX) -> int:
    """Level named by ``<prefix>_LOG_LEVEL``; INFO when unset or unknown."""
    level_name = os.environ.get(f"{prefix}_LOG_LEVEL", "INFO").upper()
    level = logging.getLevelName(level_name)
    return level if isinstance(level, int) else logging.INFO


def _json_handler(handler: logging.Handler, service_name: str) -> logging.Handler:
    handler.setFormatter(JSONFormatter(service_name=service_name))
    handler.addFilter(SearchContextFilter())
    return handler


def configure_logging(
    log_level: int | None = None,
    log_file_path: str | None = None,
    *,
    logger_name: str = PACKAGE_LOGGER,
    service_name: str = _SERVICE_NAME,
    max_bytes: int = 10_485_760,
    backup_count: int = 5,
) -> logging.Logger:
    """Install JSON handlers (stdout, plus a rotating file if given).

    Module loggers are children of ``hybrid_retrieval``, so configuring the
    package logger covers every module. Calling again replaces the handlers.
    """
    if log_level is None:
        log_level = get_log_level_from_env()

    logger = logging.getLogger(logger_name)
    logger.setLevel(log_level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.addHandler(_json_handler(logging.StreamHandler(sys.stdout), service_name))

    if log_file_path:
        try:
            Path(log_file_path).parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                filename=log_file_path,
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
        except PermissionError:
            logger.warning("Cannot write to %s, file logging disabled", log_file_path)
        else:
            logger.addHandler(_json_handler(file_handler, service_name))

    logger.propagate = False
    return logger
