from __future__ import annotations

from contextvars import ContextVar
from uuid import uuid1

NO_TRACE_ID = "no-trace-id"

_current_trace_id: ContextVar[str] = ContextVar("trace_id", default=NO_TRACE_ID)


def new_trace_id() -> str:
    return uuid1().hex


def bind_trace_id(trace_id: str | None = None) -> str:
    """Bind a trace id to the current context and return it."""
    value = trace_id or new_trace_id()
    _current_trace_id.set(value)
    return value


def get_trace_id() -> str:
    return _current_trace_id.get()
