"""Execution history and client summary endpoints.

Provides endpoints for:
- Listing a client's executions, optionally filtered by status
- Fetching a single execution record
- The per-client dashboard summary with the current balance
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from hookmeter.engine.classifier import format_for_display
from hookmeter.models import ExecutionRecord, ExecutionStatus

if TYPE_CHECKING:
    from hookmeter.ledger.credit import CreditLedger
    from hookmeter.records.store import ExecutionRecordStore

MAX_PAGE_SIZE = 200


def _record_view(record: ExecutionRecord) -> dict[str, object]:
    data = record.model_dump(mode="json")
    data["response_display"] = format_for_display(record.response)
    return data


def create_history_router(
    store: ExecutionRecordStore,
    ledger: CreditLedger,
) -> APIRouter:
    """Create the history API router."""
    router = APIRouter()

    @router.get("/executions")
    async def list_executions(
        client_id: str,
        limit: int = 50,
        status: str | None = None,
    ) -> JSONResponse:
        status_filter: ExecutionStatus | None = None
        if status:
            try:
                status_filter = ExecutionStatus(status.upper())
            except ValueError:
                return JSONResponse(
                    {"error": {"kind": "validation", "message": f"Unknown status '{status}'"}},
                    status_code=400,
                )
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        records = store.list_for_client(client_id, limit=limit, status=status_filter)
        return JSONResponse({"executions": [_record_view(r) for r in records]})

    @router.get("/executions/{execution_id}")
    async def get_execution(execution_id: str) -> JSONResponse:
        record = store.get(execution_id)
        if record is None:
            return JSONResponse(
                {"error": {"kind": "not_found", "message": "Execution not found"}},
                status_code=404,
            )
        return JSONResponse(_record_view(record))

    @router.get("/clients/{client_id}/summary")
    async def client_summary(client_id: str) -> JSONResponse:
        balance = ledger.balance(client_id)
        if balance is None:
            return JSONResponse(
                {"error": {"kind": "not_found", "message": "Client not found"}},
                status_code=404,
            )
        summary = store.summary(client_id)
        data = summary.model_dump(mode="json")
        data["tokens_balance"] = balance
        data["tokens_reserved"] = ledger.reserved(client_id)
        return JSONResponse(data)

    return router
