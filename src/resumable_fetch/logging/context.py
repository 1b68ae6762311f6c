"""Context variables injected into every log record."""

from contextvars import ContextVar
from typing import Dict, Optional

_session_url: ContextVar[Optional[str]] = ContextVar("session_url", default=None)


def set_log_context(session_url: Optional[str] = None) -> None:
    """
    Set logging context variables.

    Only non-None arguments are applied. asyncio tasks copy the current
    context when created, so values set inside a session's transport task
    stay local to that task.
    """
    if session_url is not None:
        _session_url.set(session_url)


def get_log_context() -> Dict[str, Optional[str]]:
    """Get current logging context."""
    return {
        "session_url": _session_url.get(),
    }


def clear_log_context() -> None:
    """Reset all logging context variables."""
    _session_url.set(None)
