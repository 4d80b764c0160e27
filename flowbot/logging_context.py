"""Session-aware logging context for tracing messages across modules.

Provides a logger that attaches the session and tenant identifiers to
every log record, so one conversation can be followed through the store,
the engine and the payment orchestrator.

Usage:
    from flowbot.logging_context import bind_session, get_session_logger

    bind_session("sess-abc123", "tenant-1")
    logger = get_session_logger(__name__)
    logger.info("Processing message")  # record.session_id == "sess-abc123"
"""

import logging
from contextvars import ContextVar

_session_id: ContextVar[str] = ContextVar("session_id", default="NO_SESSION")
_tenant_id: ContextVar[str] = ContextVar("tenant_id", default="NO_TENANT")


def bind_session(session_id: str, tenant_id: str) -> None:
    """Set the session and tenant for the current async context."""
    _session_id.set(session_id)
    _tenant_id.set(tenant_id)


def get_session_id() -> str:
    return _session_id.get()


def get_tenant_id() -> str:
    return _tenant_id.get()


class SessionContextFilter(logging.Filter):
    """Injects session_id and tenant_id into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.session_id = _session_id.get()  # type: ignore[attr-defined]
        record.tenant_id = _tenant_id.get()  # type: ignore[attr-defined]
        return True


def get_session_logger(name: str) -> logging.Logger:
    """Return a logger with the SessionContextFilter attached.

    The filter adds ``session_id`` and ``tenant_id`` to each record so
    formatters can include ``%(session_id)s`` in their format string.
    """
    logger = logging.getLogger(name)
    if not any(isinstance(f, SessionContextFilter) for f in logger.filters):
        logger.addFilter(SessionContextFilter())
    return logger
