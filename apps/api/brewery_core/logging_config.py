"""Structured logging for the brewery core.

Every record is rendered as one JSON object carrying the request-scoped
context (correlation id, tenant, actor) bound through :class:`LogContext`.
"""

__all__ = [
    "StructuredFormatter",
    "LogContext",
    "configure_logging",
    "reset_logging",
]

import json
import logging
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

_LOGGER_NAME = "brewery_core"

# Attributes present on every LogRecord; anything else came in through ``extra=``.
_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}


class LogContext:
    """Async-safe holder for request-scoped log fields."""

    _correlation_id: ContextVar[str | None] = ContextVar("log_correlation_id", default=None)
    _tenant_id: ContextVar[str | None] = ContextVar("log_tenant_id", default=None)
    _actor_id: ContextVar[str | None] = ContextVar("log_actor_id", default=None)

    _FIELD_NAMES = ("correlation_id", "tenant_id", "actor_id")

    @classmethod
    def set(
        cls,
        *,
        correlation_id: str | None = None,
        tenant_id: str | None = None,
        actor_id: str | None = None,
    ) -> None:
        """Set context fields. Only non-None values are updated."""
        if correlation_id is not None:
            cls._correlation_id.set(correlation_id)
        if tenant_id is not None:
            cls._tenant_id.set(tenant_id)
        if actor_id is not None:
            cls._actor_id.set(actor_id)

    @classmethod
    def get(cls, name: str) -> str | None:
        return getattr(cls, f"_{name}").get()

    @classmethod
    def get_all(cls) -> dict[str, str]:
        ctx: dict[str, str] = {}
        for name in cls._FIELD_NAMES:
            val = cls.get(name)
            if val is not None:
                ctx[name] = val
        return ctx

    @classmethod
    def clear(cls) -> None:
        for name in cls._FIELD_NAMES:
            getattr(cls, f"_{name}").set(None)


class StructuredFormatter(logging.Formatter):
    """Render log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(LogContext.get_all())

        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and not key.startswith("_"):
                payload[key] = value

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


_configured = False


def configure_logging(level: str = "INFO", fmt: str = "json") -> logging.Logger:
    """Install the brewery_core handler once; later calls only adjust the level."""
    global _configured
    logger = logging.getLogger(_LOGGER_NAME)
    logger.setLevel(level)
    if _configured:
        return logger

    handler = logging.StreamHandler()
    if fmt == "json":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    logger.addHandler(handler)
    logger.propagate = False
    _configured = True
    return logger


def reset_logging() -> None:
    """Remove installed handlers (used by tests)."""
    global _configured
    logger = logging.getLogger(_LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.propagate = True
    _configured = False
    LogContext.clear()
