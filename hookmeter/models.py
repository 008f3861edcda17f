"""Shared Pydantic data models for hookmeter."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

# Keys stored alongside transport headers that must never be sent upstream.
DESCRIPTOR_KEYS = frozenset({"input_type", "output_type"})

MAX_ERROR_LENGTH = 1000

# --- Enums ---


class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"


class DataKind(str, Enum):
    TEXT = "TEXT"
    FILE = "FILE"


class ExecutionStatus(str, Enum):
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    TIMEOUT = "TIMEOUT"


class AuditEventType(str, Enum):
    EXECUTION_ATTEMPT = "execution_attempt"
    EXECUTION_REJECTED = "execution_rejected"
    PERSISTENCE_FAILURE = "persistence_failure"
    LEDGER_FAILURE = "ledger_failure"
    TOKENS_TOPUP = "tokens_topup"


class RiskLevel(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def truncate_error(message: str) -> str:
    if len(message) > MAX_ERROR_LENGTH:
        return message[:MAX_ERROR_LENGTH] + "..."
    return message


# --- Definition / client models ---


class WebhookDefinition(BaseModel):
    """A registered outbound webhook. Read-only to the engine."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    description: str | None = None
    url: str
    method: HttpMethod = HttpMethod.POST
    headers: dict[str, str] = Field(default_factory=dict)
    input_type: DataKind = DataKind.TEXT
    output_type: DataKind = DataKind.TEXT
    is_active: bool = True
    client_id: str
    tokens_cost: int = Field(default=1, ge=0)

    @model_validator(mode="before")
    @classmethod
    def _descriptors_from_headers(cls, data: Any) -> Any:
        # Stored definitions may only carry the descriptors inside the header map.
        if not isinstance(data, dict):
            return data
        headers = data.get("headers") or {}
        if not isinstance(headers, dict):
            return data
        lowered = {str(k).lower(): v for k, v in headers.items()}
        data = dict(data)
        for key in DESCRIPTOR_KEYS:
            if data.get(key) is None and lowered.get(key):
                data[key] = str(lowered[key]).upper()
        if isinstance(data.get("method"), str):
            data["method"] = data["method"].upper()
        return data

    def outbound_headers(self) -> dict[str, str]:
        """Header map with the engine-internal descriptor keys removed."""
        return {
            k: v for k, v in self.headers.items()
            if k.lower() not in DESCRIPTOR_KEYS
        }


class Client(BaseModel):
    model_config = ConfigDict(frozen=True)

    client_id: str
    tokens_balance: int = Field(default=0, ge=0)
    is_active: bool = True


class UploadedFile(BaseModel):
    """Binary attachment supplied by a client for FILE webhooks."""

    model_config = ConfigDict(frozen=True)

    name: str
    content: bytes
    media_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.content)


# --- Classification models ---


class FileMeta(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    size: int = Field(ge=0)
    media_type: str


class ClassifiedResponse(BaseModel):
    """Tagged view of a response body: structured text or an opaque file."""

    model_config = ConfigDict(frozen=True)

    kind: DataKind
    text_value: str | None = None
    json_value: Any = None
    is_json: bool = False
    is_binary: bool = False
    size: int = Field(default=0, ge=0)
    file_meta: FileMeta | None = None

    @property
    def value(self) -> Any:
        """Decoded value: parsed JSON when available, else the raw text."""
        if self.is_json:
            return self.json_value
        return self.text_value


# --- Execution models ---


class ExecutionRecord(BaseModel):
    """One persisted execution attempt. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    id: str
    webhook_id: str
    client_id: str
    request_type: DataKind
    payload: str
    status: ExecutionStatus
    status_code: int = Field(default=0, ge=0)
    response: str | None = None
    error: str | None = None
    duration_ms: int = Field(default=0, ge=0)
    tokens_used: int = Field(default=0, ge=0)
    requested_at: str = Field(default_factory=_now_iso)

    @model_validator(mode="after")
    def _check_status_fields(self) -> ExecutionRecord:
        if self.status == ExecutionStatus.SUCCESS:
            if self.error is not None:
                raise ValueError("error must be empty for SUCCESS records")
            if self.status_code == 0:
                raise ValueError("SUCCESS records require an HTTP status code")
        elif not self.error:
            raise ValueError("error is required for non-SUCCESS records")
        return self


class ExecutionOutcome(BaseModel):
    """Result handed back to the caller of an execution."""

    model_config = ConfigDict(frozen=True)

    execution_id: str
    webhook_id: str
    client_id: str
    status: ExecutionStatus
    status_code: int = 0
    duration_ms: int = 0
    tokens_used: int = 0
    balance_after: int | None = None
    response: ClassifiedResponse | None = None
    error: str | None = None
    error_kind: str | None = None
    file_content: bytes | None = Field(default=None, exclude=True, repr=False)

    @property
    def succeeded(self) -> bool:
        return self.status == ExecutionStatus.SUCCESS


class ExecutionSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    client_id: str
    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    tokens_used: int = 0
    avg_duration_ms: float = 0.0
    recent: list[ExecutionRecord] = Field(default_factory=list)


# --- Audit Models ---


class AuditEvent(BaseModel):
    timestamp: str = Field(default_factory=_now_iso)
    event_type: AuditEventType
    client_id: str | None = None
    webhook_id: str | None = None
    action: str
    result: str  # "success" | "error" | "timeout" | "rejected"
    risk_level: RiskLevel
    details: dict[str, object] | None = None
