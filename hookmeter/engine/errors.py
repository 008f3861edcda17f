"""Error kinds raised or recorded by the execution engine."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from hookmeter.models import ExecutionOutcome


class ExecutionError(Exception):
    """Base class carrying a kind, a message and an optional status code."""

    kind = "execution"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.status_code is not None:
            data["status_code"] = self.status_code
        return data


class ValidationError(ExecutionError):
    """Required input for the declared mode is missing or empty."""

    kind = "validation"


class PreconditionError(ExecutionError):
    """Webhook or client is inactive, or the balance does not cover the cost."""

    kind = "precondition"

    INACTIVE_WEBHOOK = "inactive_webhook"
    INACTIVE_CLIENT = "inactive_client"
    INSUFFICIENT_TOKENS = "insufficient_tokens"

    def __init__(self, message: str, reason: str) -> None:
        super().__init__(message)
        self.reason = reason

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["reason"] = self.reason
        return data


class TransportError(ExecutionError):
    kind = "transport"


class HTTPError(ExecutionError):
    kind = "http"


class ExecutionTimeoutError(ExecutionError):
    kind = "timeout"


class LedgerError(ExecutionError):
    """The credit ledger could not complete an operation."""

    kind = "ledger"

    def __init__(
        self, message: str, outcome: ExecutionOutcome | None = None,
    ) -> None:
        super().__init__(message)
        self.outcome = outcome


class PersistenceError(ExecutionError):
    """Writing the execution record failed after the attempt was made."""

    kind = "persistence"

    def __init__(
        self, message: str, outcome: ExecutionOutcome | None = None,
    ) -> None:
        super().__init__(message)
        self.outcome = outcome
