"""FastAPI application exposing webhook execution and history."""

from __future__ import annotations

import os
from urllib.parse import quote

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.datastructures import UploadFile

from hookmeter.api.history_routes import create_history_router
from hookmeter.audit.logger import AuditLogger
from hookmeter.db import MeterDB
from hookmeter.engine.dispatcher import ExecutionDispatcher
from hookmeter.engine.errors import (
    ExecutionError,
    LedgerError,
    PersistenceError,
    PreconditionError,
    ValidationError,
)
from hookmeter.ledger.credit import ClientProvider, CreditLedger
from hookmeter.models import DataKind, ExecutionOutcome, UploadedFile
from hookmeter.records.store import ExecutionRecordStore
from hookmeter.registry import WebhookRegistry

CLIENT_HEADER = "x-client-id"

_TRUE_VALUES = ("1", "true", "yes", "on")


def create_app_from_env() -> FastAPI:
    """Factory for uvicorn --factory: reads config from environment variables."""
    db_path = os.environ.get("HOOKMETER_DB_PATH", "data/hookmeter.db")
    webhooks_path = os.environ.get("HOOKMETER_WEBHOOKS_PATH", "config/webhooks.json")
    timeout = float(os.environ.get("HOOKMETER_TIMEOUT_SECONDS", "30"))
    record_rejections = (
        os.environ.get("HOOKMETER_RECORD_REJECTIONS", "false").lower() in _TRUE_VALUES
    )
    audit_log = os.environ.get("AUDIT_LOG_PATH")

    db = MeterDB(db_path)
    audit_logger = AuditLogger.from_env(audit_log) if audit_log else None
    ledger = CreditLedger(db)
    store = ExecutionRecordStore(db)
    dispatcher = ExecutionDispatcher(
        ledger,
        store,
        audit_logger=audit_logger,
        default_timeout=timeout,
        record_rejections=record_rejections,
    )
    return create_app(
        WebhookRegistry.from_file(webhooks_path),
        ClientProvider(db),
        ledger,
        store,
        dispatcher,
    )


def create_app(
    registry: WebhookRegistry,
    clients: ClientProvider,
    ledger: CreditLedger,
    store: ExecutionRecordStore,
    dispatcher: ExecutionDispatcher,
) -> FastAPI:
    """Create the execution API app."""
    app = FastAPI(docs_url=None, redoc_url=None)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/webhooks/{webhook_id}/execute")
    async def execute(webhook_id: str, request: Request) -> Response:
        client_id = request.headers.get(CLIENT_HEADER)
        if not client_id:
            return _error_response(
                ValidationError("Missing X-Client-Id header"), status_code=400,
            )

        definition = registry.get_by_id(webhook_id)
        if definition is None or definition.client_id != client_id:
            return JSONResponse(
                {"error": {"kind": "not_found", "message": "Webhook not found"}},
                status_code=404,
            )
        client = clients.get_by_client_id(client_id)
        if client is None:
            return JSONResponse(
                {"error": {"kind": "not_found", "message": "Client not found"}},
                status_code=404,
            )

        try:
            raw_input = await _read_input(request, definition.input_type)
            outcome = await dispatcher.execute(
                definition, client, definition.input_type, raw_input,
            )
        except ExecutionError as exc:
            return _error_response(exc)

        return _outcome_response(outcome)

    app.include_router(create_history_router(store, ledger))

    return app


async def _read_input(request: Request, input_type: DataKind) -> str | UploadedFile | None:
    """Pull the raw text or the uploaded file out of the request body."""
    content_type = request.headers.get("content-type", "")
    if input_type == DataKind.FILE:
        if not content_type.startswith("multipart/form-data"):
            return None
        form = await request.form()
        upload = form.get("file")
        if not isinstance(upload, UploadFile):
            return None
        return UploadedFile(
            name=upload.filename or "",
            content=await upload.read(),
            media_type=upload.content_type or "application/octet-stream",
        )

    if content_type.startswith("multipart/form-data") or content_type.startswith(
        "application/x-www-form-urlencoded"
    ):
        form = await request.form()
        text = form.get("text")
        return text if isinstance(text, str) else None
    try:
        body = await request.json()
    except ValueError as exc:
        raise ValidationError("Request body must be JSON with a 'text' field") from exc
    if not isinstance(body, dict):
        raise ValidationError("Request body must be JSON with a 'text' field")
    text = body.get("text")
    return text if isinstance(text, str) else None


def _status_for(exc: ExecutionError) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, PreconditionError):
        if exc.reason == PreconditionError.INSUFFICIENT_TOKENS:
            return 402
        return 403
    if isinstance(exc, (PersistenceError, LedgerError)):
        return 500
    return 502


def _error_response(exc: ExecutionError, status_code: int | None = None) -> JSONResponse:
    body: dict[str, object] = {"error": exc.to_dict()}
    outcome = getattr(exc, "outcome", None)
    if outcome is not None:
        body["outcome"] = outcome.model_dump(mode="json")
    return JSONResponse(body, status_code=status_code or _status_for(exc))


def _outcome_response(outcome: ExecutionOutcome) -> Response:
    headers = {
        "X-Execution-Id": outcome.execution_id,
        "X-Execution-Status": outcome.status.value,
    }
    response = outcome.response
    if (
        outcome.file_content is not None
        and response is not None
        and response.file_meta is not None
    ):
        meta = response.file_meta
        headers["Content-Disposition"] = (
            f"attachment; filename*=UTF-8''{quote(meta.name)}"
        )
        return Response(
            content=outcome.file_content,
            media_type=meta.media_type,
            headers=headers,
        )
    return JSONResponse(outcome.model_dump(mode="json"), headers=headers)
