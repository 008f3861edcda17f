"""Payload adapter: turns client input into an outbound request body.

TEXT inputs become a JSON envelope ``{"text": ...}``. FILE inputs become a
multipart body with the file and its name/size/type as extra fields; the
content type is left to httpx so it can set the multipart boundary.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

import httpx

from hookmeter.engine.errors import ValidationError
from hookmeter.models import DataKind, UploadedFile, WebhookDefinition

BODYLESS_METHODS = frozenset({"GET", "HEAD"})

_MAX_TEXT_SNAPSHOT = 10_000
_JSON_CONTENT_TYPE = "application/json"


@dataclass
class AdaptedRequest:
    """Outbound request ready to hand to an httpx client."""

    method: str
    url: str
    headers: dict[str, str]
    snapshot: str
    json_body: dict[str, Any] | None = None
    files: dict[str, tuple[str, bytes, str]] | None = None
    data: dict[str, str] = field(default_factory=dict)

    @property
    def carries_body(self) -> bool:
        return self.method not in BODYLESS_METHODS

    def send_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "method": self.method,
            "url": self.url,
            "headers": self.headers,
        }
        if not self.carries_body:
            return kwargs
        if self.json_body is not None:
            kwargs["json"] = self.json_body
        if self.files is not None:
            kwargs["files"] = self.files
            kwargs["data"] = self.data
        return kwargs


def _merge_headers(base: dict[str, str], computed: dict[str, str]) -> dict[str, str]:
    overridden = {k.lower() for k in computed}
    merged = {k: v for k, v in base.items() if k.lower() not in overridden}
    merged.update(computed)
    return merged


def _check_url(url: str) -> None:
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL as exc:
        raise ValidationError(f"Invalid webhook URL: {exc}") from exc
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise ValidationError(f"Webhook URL must be an absolute http(s) URL: {url}")


def adapt(
    definition: WebhookDefinition,
    input_mode: DataKind | None,
    raw_input: str | UploadedFile | None,
) -> AdaptedRequest:
    """Build the outbound request for ``definition``.

    Raises:
        ValidationError: If the input does not match the declared input type
            or the required input is missing or empty.
    """
    declared = definition.input_type
    if input_mode is not None and DataKind(input_mode) != declared:
        raise ValidationError(
            f"Webhook '{definition.id}' expects {declared.value} input, "
            f"got {DataKind(input_mode).value}"
        )

    _check_url(definition.url)
    method = definition.method.value
    headers = definition.outbound_headers()

    if declared == DataKind.TEXT:
        if not isinstance(raw_input, str) or not raw_input.strip():
            raise ValidationError("Text input is required")
        snapshot = json.dumps({"text": raw_input[:_MAX_TEXT_SNAPSHOT]})
        request = AdaptedRequest(
            method=method,
            url=definition.url,
            headers=headers,
            snapshot=snapshot,
            json_body={"text": raw_input},
        )
        if request.carries_body:
            request.headers = _merge_headers(
                headers, {"Content-Type": _JSON_CONTENT_TYPE},
            )
        return request

    if not isinstance(raw_input, UploadedFile):
        raise ValidationError("File input is required")
    if not raw_input.name or not raw_input.content:
        raise ValidationError("Uploaded file must have a name and content")

    media_type = raw_input.media_type or "application/octet-stream"
    snapshot = json.dumps({
        "fileName": raw_input.name,
        "fileSize": raw_input.size,
        "fileType": media_type,
    })
    request = AdaptedRequest(
        method=method,
        url=definition.url,
        headers=headers,
        snapshot=snapshot,
        files={"file": (raw_input.name, raw_input.content, media_type)},
        data={
            "fileName": raw_input.name,
            "fileSize": str(raw_input.size),
            "fileType": media_type,
        },
    )
    if request.carries_body:
        # A fixed Content-Type would lose the multipart boundary.
        request.headers = {
            k: v for k, v in headers.items() if k.lower() != "content-type"
        }
    return request
