"""
Logging for FMS: one stream handler per logger, level emoji, request correlation.

    logger = get_logger(__name__)      # -> "fms.features.index.scheduler"
    log_success(logger, "Indexed 1200 entries")
    log_structured(logger, logging.INFO, "Crawl finished", root="/docs", visited=1200)

The default level comes from FMS_LOG_LEVEL (INFO when unset or unknown).
"""
import json
import logging
import os
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Final

SUCCESS_LEVEL: Final[int] = 25  # between INFO and WARNING
logging.addLevelName(SUCCESS_LEVEL, "SUCCESS")

_LEVEL_EMOJI: Final[dict[int, str]] = {
    logging.DEBUG: "🔍",
    logging.INFO: "ℹ️",
    SUCCESS_LEVEL: "✅",
    logging.WARNING: "⚠️",
    logging.ERROR: "❌",
    logging.CRITICAL: "🔥",
}

PREFIX: Final[str] = "🗂️ FMS"
_PACKAGE_ANCHORS: Final[tuple[str, ...]] = ("fms_backend", "fms_shared")

# Set per HTTP request by the observability middleware.
request_id_var: ContextVar[str] = ContextVar("request_id", default="")


class CorrelationFilter(logging.Filter):
    """Copy the current request id onto every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get("")
        return True


class EmojiFormatter(logging.Formatter):
    """`🗂️ FMS [emoji] name [request-id]: message` on one line."""

    def formatMessage(self, record: logging.LogRecord) -> str:
        emoji = _LEVEL_EMOJI.get(record.levelno, "🗂️")
        rid = str(getattr(record, "request_id", "") or "").strip()
        where = f"{record.name} [{rid}]" if rid else record.name
        return f"{PREFIX} [{emoji}] {where}: {record.getMessage()}"


def _default_level() -> int:
    name = os.getenv("FMS_LOG_LEVEL", "").strip().upper()
    level = logging.getLevelName(name) if name else logging.INFO
    return level if isinstance(level, int) else logging.INFO


def _short_name(name: str) -> str:
    if name.startswith("__main__"):
        return "main"
    parts = name.split(".")
    for anchor in _PACKAGE_ANCHORS:
        if anchor in parts:
            rest = parts[parts.index(anchor) + 1:]
            return ".".join(rest) or anchor
    return name


def get_logger(name: str, level: int | None = None) -> logging.Logger:
    """
    Logger under the `fms.` namespace, configured once.

    Args:
        name: Usually `__name__`; the package prefix is dropped.
        level: Overrides the FMS_LOG_LEVEL default.
    """
    logger = logging.getLogger(f"fms.{_short_name(name)}")
    if not any(isinstance(f, CorrelationFilter) for f in logger.filters):
        logger.addFilter(CorrelationFilter())
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(EmojiFormatter())
        logger.addHandler(handler)
        logger.propagate = False
        logger.setLevel(_default_level())
    if level is not None:
        logger.setLevel(level)
    return logger


def log_success(logger: logging.Logger, message: str) -> None:
    logger.log(SUCCESS_LEVEL, message)


def log_structured(logger: logging.Logger, level: int, message: str, **context: Any) -> None:
    """Log `message` with `context` as one JSON object (crawl lifecycle events)."""
    payload = {
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "context": context,
    }
    logger.log(level, json.dumps(payload, ensure_ascii=False, default=str))
