"""Webhook execution engine.

This package provides:
- Payload adaptation for TEXT and FILE inputs
- Response classification into text or file results
- The execution dispatcher with metering and recording
"""

from hookmeter.engine.classifier import (
    classify,
    contains_binary,
    format_for_display,
    response_snapshot,
)
from hookmeter.engine.dispatcher import Clock, ExecutionDispatcher, SystemClock
from hookmeter.engine.errors import (
    ExecutionError,
    ExecutionTimeoutError,
    HTTPError,
    LedgerError,
    PersistenceError,
    PreconditionError,
    TransportError,
    ValidationError,
)
from hookmeter.engine.payload import AdaptedRequest, adapt

__all__ = [
    # Exceptions
    "ExecutionError",
    "ExecutionTimeoutError",
    "HTTPError",
    "LedgerError",
    "PersistenceError",
    "PreconditionError",
    "TransportError",
    "ValidationError",
    # Components
    "AdaptedRequest",
    "Clock",
    "ExecutionDispatcher",
    "SystemClock",
    # Functions
    "adapt",
    "classify",
    "contains_binary",
    "format_for_display",
    "response_snapshot",
]
