"""Execution dispatcher: runs one webhook execution end to end.

Stages:
1. Precondition check on the webhook and client snapshots
2. Payload adaptation (input validation)
3. Atomic token reservation in the credit ledger
4. Outbound HTTP call under a deadline
5. Response classification and duration
6. Token debit (once the call was issued, whatever its outcome)
7. Execution record write
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, NoReturn, Protocol

import httpx

from hookmeter.engine.classifier import classify, response_snapshot
from hookmeter.engine.errors import (
    ExecutionError,
    ExecutionTimeoutError,
    HTTPError,
    LedgerError,
    PersistenceError,
    PreconditionError,
    TransportError,
)
from hookmeter.engine.payload import AdaptedRequest, adapt
from hookmeter.models import (
    AuditEvent,
    AuditEventType,
    ClassifiedResponse,
    Client,
    DataKind,
    ExecutionOutcome,
    ExecutionRecord,
    ExecutionStatus,
    RiskLevel,
    UploadedFile,
    WebhookDefinition,
    truncate_error,
)

if TYPE_CHECKING:
    from hookmeter.audit.logger import AuditLogger
    from hookmeter.ledger.credit import CreditLedger
    from hookmeter.records.store import ExecutionRecordStore

logger = logging.getLogger(__name__)

_CANCELLED_MESSAGE = "Execution cancelled"


class Clock(Protocol):
    def now(self) -> float:
        """Monotonic time in seconds."""
        ...


class SystemClock:
    def now(self) -> float:
        return time.monotonic()


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__


def _http_error_message(status_code: int, classified: ClassifiedResponse | None) -> str:
    if classified is None:
        return f"HTTP {status_code}"
    if classified.kind == DataKind.FILE or classified.is_binary:
        return f"HTTP {status_code}: [binary content, {classified.size} bytes]"
    text = (classified.text_value or "").strip()
    return f"HTTP {status_code}: {text}" if text else f"HTTP {status_code}"


class ExecutionDispatcher:
    """Orchestrates webhook executions against the ledger and record store."""

    DEFAULT_TIMEOUT_SECONDS = 30.0

    def __init__(
        self,
        ledger: CreditLedger,
        store: ExecutionRecordStore,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Clock | None = None,
        audit_logger: AuditLogger | None = None,
        default_timeout: float | None = None,
        record_rejections: bool = False,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            ledger: Credit ledger used to reserve and debit tokens.
            store: Append-only execution record store.
            transport: Optional httpx transport (tests inject a MockTransport).
            clock: Monotonic clock used for durations.
            audit_logger: Optional audit trail for attempts and rejections.
            default_timeout: Deadline in seconds when the caller gives none.
            record_rejections: Also record precondition rejections, with
                zero tokens and status code 0.
        """
        self._ledger = ledger
        self._store = store
        self._transport = transport
        self._clock = clock or SystemClock()
        self._audit = audit_logger
        self._default_timeout = (
            self.DEFAULT_TIMEOUT_SECONDS if default_timeout is None else default_timeout
        )
        self._record_rejections = record_rejections

    async def execute(
        self,
        definition: WebhookDefinition,
        client: Client,
        input_mode: DataKind | None,
        raw_input: str | UploadedFile | None,
        timeout: float | None = None,
    ) -> ExecutionOutcome:
        """Execute ``definition`` on behalf of ``client``.

        Returns:
            The outcome of an attempt that reached the network step, whatever
            its terminal status.

        Raises:
            ValidationError: The input is missing or does not fit the webhook.
            PreconditionError: Inactive webhook/client or insufficient tokens.
            LedgerError: The debit failed after the call; the record was
                written with zero tokens used.
            PersistenceError: The record write failed; the debit stands.
        """
        self._check_preconditions(definition, client)
        request = adapt(definition, input_mode, raw_input)

        cost = definition.tokens_cost
        if not self._ledger.check_and_reserve(client.client_id, cost):
            if not self._ledger.is_active(client.client_id):
                self._reject(definition, client, PreconditionError(
                    f"Client '{client.client_id}' is not active",
                    PreconditionError.INACTIVE_CLIENT,
                ))
            self._reject(definition, client, PreconditionError(
                f"Insufficient tokens: {cost} required",
                PreconditionError.INSUFFICIENT_TOKENS,
            ))

        execution_id = str(uuid.uuid4())
        requested_at = _now_iso()
        deadline = timeout if timeout is not None else self._default_timeout

        response: httpx.Response | None = None
        status = ExecutionStatus.ERROR
        failure: ExecutionError | None = None
        cancelled = False

        start = self._clock.now()
        try:
            response = await asyncio.wait_for(self._send(request, deadline), deadline)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            status = ExecutionStatus.TIMEOUT
            failure = ExecutionTimeoutError(f"No response within {deadline:g}s deadline")
        except httpx.HTTPError as exc:
            failure = TransportError(_describe(exc))
        except TransportError as exc:
            failure = exc
        except asyncio.CancelledError:
            cancelled = True
            failure = TransportError(_CANCELLED_MESSAGE)
        except Exception:
            # Raised before the request reached the transport.
            self._ledger.release(client.client_id, cost)
            raise
        duration_ms = max(int(round((self._clock.now() - start) * 1000)), 0)

        classified: ClassifiedResponse | None = None
        status_code = 0
        if response is not None:
            status_code = response.status_code
            try:
                classified = classify(
                    definition.output_type, response.headers, response.content,
                )
            except Exception as exc:
                logger.exception(
                    "Could not classify response of execution %s", execution_id,
                )
                failure = ExecutionError(
                    f"Unreadable response: {_describe(exc)}", status_code,
                )
            else:
                if 200 <= status_code < 400:
                    status = ExecutionStatus.SUCCESS
                else:
                    failure = HTTPError(
                        _http_error_message(status_code, classified), status_code,
                    )

        tokens_used = 0
        balance_after: int | None = None
        ledger_error: LedgerError | None = None
        try:
            balance_after = self._ledger.debit(client.client_id, cost, reference=execution_id)
            tokens_used = cost
        except LedgerError as exc:
            ledger_error = exc
            logger.error(
                "Debit of %d tokens failed for client %s (execution %s): %s",
                cost, client.client_id, execution_id, exc.message,
            )
            self._audit_event(
                AuditEventType.LEDGER_FAILURE, definition, client,
                {"execution_id": execution_id, "message": exc.message},
            )

        record = ExecutionRecord(
            id=execution_id,
            webhook_id=definition.id,
            client_id=client.client_id,
            request_type=definition.input_type,
            payload=request.snapshot,
            status=status,
            status_code=status_code,
            response=response_snapshot(classified),
            error=(
                truncate_error(failure.message)
                if status != ExecutionStatus.SUCCESS and failure is not None
                else None
            ),
            duration_ms=duration_ms,
            tokens_used=tokens_used,
            requested_at=requested_at,
        )
        outcome = ExecutionOutcome(
            execution_id=execution_id,
            webhook_id=definition.id,
            client_id=client.client_id,
            status=status,
            status_code=status_code,
            duration_ms=duration_ms,
            tokens_used=tokens_used,
            balance_after=balance_after,
            response=classified,
            error=record.error,
            error_kind=failure.kind if record.error is not None and failure else None,
            file_content=(
                response.content
                if response is not None and classified is not None
                and classified.kind == DataKind.FILE
                else None
            ),
        )

        try:
            self._store.append(record)
        except PersistenceError as exc:
            logger.error(
                "Execution %s for client %s not recorded; %d tokens debited: %s",
                execution_id, client.client_id, tokens_used, exc.message,
            )
            self._audit_event(
                AuditEventType.PERSISTENCE_FAILURE, definition, client,
                {"execution_id": execution_id, "tokens_used": tokens_used},
            )
            if cancelled:
                raise asyncio.CancelledError() from exc
            raise PersistenceError(exc.message, outcome=outcome) from exc

        if self._audit:
            self._audit.log_execution(record)
        logger.info(
            "Execution %s webhook=%s client=%s status=%s code=%d duration_ms=%d tokens=%d",
            execution_id, definition.id, client.client_id, status.value,
            status_code, duration_ms, tokens_used,
        )

        if cancelled:
            raise asyncio.CancelledError()
        if ledger_error is not None:
            raise LedgerError(ledger_error.message, outcome=outcome) from ledger_error
        return outcome

    async def _send(self, request: AdaptedRequest, deadline: float) -> httpx.Response:
        """Send ``request``; failures after hand-off become TransportError."""
        async with httpx.AsyncClient(transport=self._transport, timeout=deadline) as client:
            outbound = client.build_request(**request.send_kwargs())
            try:
                return await client.send(outbound)
            except (httpx.HTTPError, TimeoutError):
                raise
            except Exception as exc:
                raise TransportError(_describe(exc)) from exc

    def _check_preconditions(self, definition: WebhookDefinition, client: Client) -> None:
        if not definition.is_active:
            self._reject(definition, client, PreconditionError(
                f"Webhook '{definition.id}' is not active",
                PreconditionError.INACTIVE_WEBHOOK,
            ))
        if not client.is_active:
            self._reject(definition, client, PreconditionError(
                f"Client '{client.client_id}' is not active",
                PreconditionError.INACTIVE_CLIENT,
            ))
        if client.tokens_balance < definition.tokens_cost:
            self._reject(definition, client, PreconditionError(
                f"Insufficient tokens: {definition.tokens_cost} required, "
                f"balance is {client.tokens_balance}",
                PreconditionError.INSUFFICIENT_TOKENS,
            ))

    def _reject(
        self,
        definition: WebhookDefinition,
        client: Client,
        error: PreconditionError,
    ) -> NoReturn:
        """Report a rejected attempt and raise ``error``."""
        logger.warning(
            "Execution rejected webhook=%s client=%s reason=%s",
            definition.id, client.client_id, error.reason,
        )
        if self._audit:
            self._audit.log_rejection(
                client.client_id, definition.id, error.reason, error.message,
            )
        if self._record_rejections:
            self._record_rejection(definition, client, error)
        raise error

    def _record_rejection(
        self,
        definition: WebhookDefinition,
        client: Client,
        error: PreconditionError,
    ) -> None:
        try:
            self._store.append(ExecutionRecord(
                id=str(uuid.uuid4()),
                webhook_id=definition.id,
                client_id=client.client_id,
                request_type=definition.input_type,
                payload="{}",
                status=ExecutionStatus.ERROR,
                status_code=0,
                error=truncate_error(error.message),
                duration_ms=0,
                tokens_used=0,
            ))
        except PersistenceError as exc:
            logger.error(
                "Rejected execution webhook=%s client=%s not recorded: %s",
                definition.id, client.client_id, exc.message,
            )

    def _audit_event(
        self,
        event_type: AuditEventType,
        definition: WebhookDefinition,
        client: Client,
        details: dict[str, object],
    ) -> None:
        if self._audit is None:
            return
        self._audit.log(AuditEvent(
            event_type=event_type,
            client_id=client.client_id,
            webhook_id=definition.id,
            action="execute",
            result="error",
            risk_level=RiskLevel.HIGH,
            details=details,
        ))
