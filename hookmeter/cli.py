"""Click CLI for executing webhooks and managing client tokens."""

from __future__ import annotations

import asyncio
import json
import mimetypes
from pathlib import Path

import click

from hookmeter.audit.logger import AuditLogger, validate_audit_chain
from hookmeter.db import MeterDB
from hookmeter.engine.classifier import format_for_display
from hookmeter.engine.dispatcher import ExecutionDispatcher
from hookmeter.engine.errors import ExecutionError, LedgerError
from hookmeter.ledger.credit import ClientProvider, CreditLedger
from hookmeter.models import (
    AuditEvent,
    AuditEventType,
    Client,
    DataKind,
    ExecutionStatus,
    RiskLevel,
    UploadedFile,
)
from hookmeter.records.store import ExecutionRecordStore
from hookmeter.registry import WebhookRegistry


@click.group()
@click.option("--db", default="data/hookmeter.db", help="SQLite database path.")
@click.option("--webhooks", default="config/webhooks.json", help="Webhook definitions JSON.")
@click.option("--audit-log", default=None, help="Audit log file path.")
@click.option("--timeout", default=30.0, type=float, help="Outbound deadline in seconds.")
@click.pass_context
def cli(
    ctx: click.Context, db: str, webhooks: str, audit_log: str | None, timeout: float,
) -> None:
    """hookmeter webhook execution and metering CLI."""
    ctx.ensure_object(dict)
    meter_db = MeterDB(db)
    ctx.call_on_close(meter_db.close)
    audit_logger = AuditLogger(audit_log) if audit_log else None
    ledger = CreditLedger(meter_db)
    store = ExecutionRecordStore(meter_db)
    ctx.obj["webhooks_path"] = webhooks
    ctx.obj["audit_logger"] = audit_logger
    ctx.obj["ledger"] = ledger
    ctx.obj["clients"] = ClientProvider(meter_db)
    ctx.obj["store"] = store
    ctx.obj["dispatcher"] = ExecutionDispatcher(
        ledger, store, audit_logger=audit_logger, default_timeout=timeout,
    )


@cli.command()
@click.argument("webhook_id")
@click.option("--client", "client_id", required=True, help="Client executing the webhook.")
@click.option("--text", default=None, help="Text input for TEXT webhooks.")
@click.option(
    "--file", "file_path", default=None,
    type=click.Path(exists=True, dir_okay=False), help="File input for FILE webhooks.",
)
@click.option(
    "--output", default=None, type=click.Path(dir_okay=False),
    help="Where to save a FILE response.",
)
@click.pass_context
def execute(
    ctx: click.Context,
    webhook_id: str,
    client_id: str,
    text: str | None,
    file_path: str | None,
    output: str | None,
) -> None:
    """Execute a webhook and print the outcome as JSON."""
    registry = WebhookRegistry.from_file(ctx.obj["webhooks_path"])
    definition = registry.get_by_id(webhook_id)
    if definition is None:
        raise click.ClickException(f"Unknown webhook: {webhook_id}")
    client = ctx.obj["clients"].get_by_client_id(client_id)
    if client is None:
        raise click.ClickException(f"Unknown client: {client_id}")

    raw_input: str | UploadedFile | None = text
    if definition.input_type == DataKind.FILE:
        raw_input = None
        if file_path:
            path = Path(file_path)
            raw_input = UploadedFile(
                name=path.name,
                content=path.read_bytes(),
                media_type=mimetypes.guess_type(path.name)[0] or "application/octet-stream",
            )

    dispatcher: ExecutionDispatcher = ctx.obj["dispatcher"]
    try:
        outcome = asyncio.run(
            dispatcher.execute(definition, client, definition.input_type, raw_input)
        )
    except ExecutionError as exc:
        click.echo(json.dumps({"error": exc.to_dict()}, indent=2))
        raise SystemExit(1) from exc

    if outcome.file_content is not None and outcome.response and outcome.response.file_meta:
        target = Path(output or outcome.response.file_meta.name)
        target.write_bytes(outcome.file_content)
        click.echo(f"Saved {len(outcome.file_content)} bytes to {target}", err=True)
    click.echo(outcome.model_dump_json(indent=2))
    if not outcome.succeeded:
        raise SystemExit(1)


@cli.command()
@click.option("--client", "client_id", required=True, help="Client whose history to show.")
@click.option("--limit", default=20, type=int, help="Maximum records to show.")
@click.option(
    "--status", default=None,
    type=click.Choice([s.value for s in ExecutionStatus], case_sensitive=False),
    help="Only show records with this status.",
)
@click.pass_context
def history(ctx: click.Context, client_id: str, limit: int, status: str | None) -> None:
    """Show recent executions for a client."""
    store: ExecutionRecordStore = ctx.obj["store"]
    status_filter = ExecutionStatus(status.upper()) if status else None
    records = store.list_for_client(client_id, limit=limit, status=status_filter)
    if not records:
        click.echo("No executions found.")
        return
    for record in records:
        click.echo(
            f"{record.requested_at}  {record.webhook_id}  {record.status.value}"
            f"  code={record.status_code}  {record.duration_ms}ms"
            f"  tokens={record.tokens_used}"
        )
        if record.error:
            click.echo(f"  error: {record.error}")
        click.echo(f"  response: {format_for_display(record.response)}")


@cli.command()
@click.argument("client_id")
@click.pass_context
def balance(ctx: click.Context, client_id: str) -> None:
    """Show a client's token balance and execution summary."""
    ledger: CreditLedger = ctx.obj["ledger"]
    store: ExecutionRecordStore = ctx.obj["store"]
    current = ledger.balance(client_id)
    if current is None:
        raise click.ClickException(f"Unknown client: {client_id}")
    summary = store.summary(client_id, recent=0)
    click.echo(json.dumps({
        "client_id": client_id,
        "tokens_balance": current,
        "tokens_reserved": ledger.reserved(client_id),
        "executions": summary.total,
        "by_status": summary.by_status,
        "tokens_used": summary.tokens_used,
    }, indent=2))


@cli.command()
@click.argument("client_id")
@click.argument("amount", type=click.IntRange(min=1))
@click.option("--reference", default=None, help="Reference stored with the transaction.")
@click.pass_context
def topup(ctx: click.Context, client_id: str, amount: int, reference: str | None) -> None:
    """Add tokens to a client's balance."""
    ledger: CreditLedger = ctx.obj["ledger"]
    try:
        new_balance = ledger.top_up(client_id, amount, reference=reference)
    except LedgerError as exc:
        raise click.ClickException(exc.message) from exc
    audit_logger: AuditLogger | None = ctx.obj["audit_logger"]
    if audit_logger:
        audit_logger.log(AuditEvent(
            event_type=AuditEventType.TOKENS_TOPUP,
            client_id=client_id,
            action="topup",
            result="success",
            risk_level=RiskLevel.MEDIUM,
            details={"amount": amount, "balance_after": new_balance},
        ))
    click.echo(f"Balance for {client_id}: {new_balance}")


@cli.command("add-client")
@click.argument("client_id")
@click.option("--tokens", default=0, type=click.IntRange(min=0), help="Starting balance.")
@click.option("--inactive", is_flag=True, help="Create the client as inactive.")
@click.pass_context
def add_client(ctx: click.Context, client_id: str, tokens: int, inactive: bool) -> None:
    """Create or update a client."""
    clients: ClientProvider = ctx.obj["clients"]
    clients.upsert(Client(client_id=client_id, tokens_balance=tokens, is_active=not inactive))
    click.echo(f"Client {client_id} saved with {tokens} tokens")


@cli.command("verify-audit")
@click.pass_context
def verify_audit(ctx: click.Context) -> None:
    """Check the audit log hash chain."""
    audit_logger: AuditLogger | None = ctx.obj["audit_logger"]
    if audit_logger is None:
        raise click.ClickException("--audit-log is required")
    result = validate_audit_chain(audit_logger.log_path)
    if result.valid:
        click.echo("Audit chain valid")
        return
    click.echo(f"Audit chain broken at line {result.broken_at_line}")
    raise SystemExit(1)
