"""Tests for engine error kinds."""

from __future__ import annotations

import pytest

from hookmeter import engine
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


@pytest.mark.parametrize(
    ("error_cls", "kind"),
    [
        (ValidationError, "validation"),
        (TransportError, "transport"),
        (HTTPError, "http"),
        (ExecutionTimeoutError, "timeout"),
        (LedgerError, "ledger"),
        (PersistenceError, "persistence"),
    ],
)
def test_kind_and_to_dict(error_cls: type[ExecutionError], kind: str) -> None:
    error = error_cls("went wrong")
    assert isinstance(error, ExecutionError)
    assert error.to_dict() == {"kind": kind, "message": "went wrong"}


def test_status_code_included_when_set() -> None:
    assert HTTPError("HTTP 404", 404).to_dict() == {
        "kind": "http", "message": "HTTP 404", "status_code": 404,
    }


def test_precondition_carries_reason() -> None:
    error = PreconditionError("no", PreconditionError.INACTIVE_WEBHOOK)
    assert error.to_dict()["reason"] == "inactive_webhook"
    assert str(error) == "no"


def test_package_exports() -> None:
    assert engine.ExecutionDispatcher is not None
    assert callable(engine.adapt)
    assert callable(engine.classify)
    assert set(engine.__all__) >= {"ExecutionDispatcher", "adapt", "classify"}
