"""Shared test fixtures for hookmeter."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import httpx
import pytest

from hookmeter.audit.logger import AuditLogger
from hookmeter.db import MeterDB
from hookmeter.engine.dispatcher import ExecutionDispatcher
from hookmeter.ledger.credit import ClientProvider, CreditLedger
from hookmeter.models import (
    AuditEvent,
    AuditEventType,
    Client,
    DataKind,
    ExecutionRecord,
    ExecutionStatus,
    RiskLevel,
    UploadedFile,
    WebhookDefinition,
)
from hookmeter.records.store import ExecutionRecordStore

Handler = Callable[[httpx.Request], Any]


class FakeClock:
    """Clock that advances by a fixed step on every reading."""

    def __init__(self, start: float = 100.0, step: float = 0.25) -> None:
        self._now = start
        self._step = step

    def now(self) -> float:
        current = self._now
        self._now += self._step
        return current


class RecordingHandler:
    """httpx MockTransport handler that remembers every request it served."""

    def __init__(self, respond: Handler | None = None) -> None:
        self._respond = respond or (lambda request: httpx.Response(200, json={"ok": True}))
        self.requests: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        await request.aread()
        self.requests.append(request)
        result = self._respond(request)
        if hasattr(result, "__await__"):
            result = await result
        return result

    @property
    def call_count(self) -> int:
        return len(self.requests)


# --- Factory functions for test data ---


def make_definition(**kwargs: Any) -> WebhookDefinition:
    """Factory for WebhookDefinition with sensible defaults."""
    defaults: dict[str, Any] = {
        "id": "wh-1",
        "name": "Test hook",
        "url": "https://hooks.test/run",
        "method": "POST",
        "headers": {},
        "input_type": DataKind.TEXT,
        "output_type": DataKind.TEXT,
        "client_id": "client-1",
        "tokens_cost": 1,
    }
    defaults.update(kwargs)
    return WebhookDefinition(**defaults)


def make_client(**kwargs: Any) -> Client:
    defaults: dict[str, Any] = {"client_id": "client-1", "tokens_balance": 10}
    defaults.update(kwargs)
    return Client(**defaults)


def make_upload(**kwargs: Any) -> UploadedFile:
    defaults: dict[str, Any] = {
        "name": "report.pdf",
        "content": b"%PDF-1.4 test",
        "media_type": "application/pdf",
    }
    defaults.update(kwargs)
    return UploadedFile(**defaults)


def make_record(**kwargs: Any) -> ExecutionRecord:
    """Factory for ExecutionRecord with sensible defaults."""
    defaults: dict[str, Any] = {
        "id": "exec-1",
        "webhook_id": "wh-1",
        "client_id": "client-1",
        "request_type": DataKind.TEXT,
        "payload": '{"text": "hello"}',
        "status": ExecutionStatus.SUCCESS,
        "status_code": 200,
        "response": '{"ok": true}',
        "duration_ms": 120,
        "tokens_used": 1,
    }
    defaults.update(kwargs)
    return ExecutionRecord(**defaults)


def make_audit_event(**kwargs: Any) -> AuditEvent:
    defaults: dict[str, Any] = {
        "event_type": AuditEventType.EXECUTION_ATTEMPT,
        "action": "execute",
        "result": "success",
        "risk_level": RiskLevel.INFO,
    }
    defaults.update(kwargs)
    return AuditEvent(**defaults)


# --- Fixtures ---


@pytest.fixture
def db(tmp_path: Path) -> Iterator[MeterDB]:
    meter_db = MeterDB(str(tmp_path / "hookmeter.db"))
    yield meter_db
    meter_db.close()


@pytest.fixture
def ledger(db: MeterDB) -> CreditLedger:
    return CreditLedger(db)


@pytest.fixture
def clients(db: MeterDB) -> ClientProvider:
    return ClientProvider(db)


@pytest.fixture
def store(db: MeterDB) -> ExecutionRecordStore:
    return ExecutionRecordStore(db)


@pytest.fixture
def seed_client(clients: ClientProvider) -> Callable[..., Client]:
    """Insert a client row and return its snapshot."""

    def _seed(**kwargs: Any) -> Client:
        client = make_client(**kwargs)
        clients.upsert(client)
        return client

    return _seed


@pytest.fixture
def mock_audit_logger() -> MagicMock:
    return MagicMock(spec=AuditLogger)


@pytest.fixture
def config_dir() -> Path:
    return Path(__file__).parent.parent / "config"


@pytest.fixture
def make_dispatcher(
    ledger: CreditLedger, store: ExecutionRecordStore,
) -> Callable[..., ExecutionDispatcher]:
    """Build a dispatcher whose outbound calls go to a mock transport."""

    def _make(handler: Handler | None = None, **kwargs: Any) -> ExecutionDispatcher:
        transport = httpx.MockTransport(handler or RecordingHandler())
        defaults: dict[str, Any] = {"clock": FakeClock()}
        defaults.update(kwargs)
        return ExecutionDispatcher(ledger, store, transport=transport, **defaults)

    return _make
