"""Response classifier: decides whether a response body is text or a file.

Classification never raises: malformed or too deeply nested JSON falls back
to the raw text and undecodable bytes are decoded with replacement characters.
"""

from __future__ import annotations

import json
import mimetypes
import re
from collections.abc import Mapping
from urllib.parse import unquote

from hookmeter.models import ClassifiedResponse, DataKind, FileMeta

_MAX_TEXT_SNAPSHOT = 100_000
_DEFAULT_FILENAME = "download"
_BINARY_PLACEHOLDER = "[Binary content received - cannot be displayed]"

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0e-\x1f\x7f-\x9f]")
_FILENAME_EXT = re.compile(r"filename\*\s*=\s*([^']*)'[^']*'([^;]+)", re.IGNORECASE)
_FILENAME = re.compile(r"filename\s*=\s*(\"([^\"]*)\"|[^;]+)", re.IGNORECASE)


def _lower_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {k.lower(): v for k, v in headers.items()}


def _media_type(content_type: str) -> str:
    return content_type.split(";", 1)[0].strip().lower()


def _charset(content_type: str) -> str:
    for param in content_type.split(";")[1:]:
        key, _, value = param.partition("=")
        if key.strip().lower() == "charset" and value.strip():
            return value.strip().strip('"')
    return "utf-8"


def is_json_media_type(media_type: str) -> bool:
    return media_type == "application/json" or media_type.endswith("+json")


def is_text_media_type(media_type: str) -> bool:
    return media_type.startswith("text/")


def is_attachment(content_disposition: str | None) -> bool:
    if not content_disposition:
        return False
    return content_disposition.split(";", 1)[0].strip().lower() == "attachment"


def filename_from_disposition(content_disposition: str | None) -> str | None:
    """Extract a filename from a Content-Disposition header value."""
    if not content_disposition:
        return None
    match = _FILENAME_EXT.search(content_disposition)
    if match:
        encoding = match.group(1).strip() or "utf-8"
        try:
            return unquote(match.group(2).strip(), encoding=encoding)
        except LookupError:
            return unquote(match.group(2).strip())
    match = _FILENAME.search(content_disposition)
    if match:
        name = match.group(2) if match.group(2) is not None else match.group(1)
        name = name.strip().strip("'\"")
        return name or None
    return None


def contains_binary(text: str | None) -> bool:
    """True when ``text`` holds bytes that are unsafe to render as text."""
    if not text:
        return False
    if "\\u0000" in text or "\ufffd" in text:
        return True
    return _CONTROL_CHARS.search(text) is not None


def _decode(body: bytes, charset: str) -> str:
    try:
        return body.decode(charset, errors="replace")
    except LookupError:
        return body.decode("utf-8", errors="replace")


def _file_meta(headers: dict[str, str], body: bytes) -> FileMeta:
    content_type = headers.get("content-type", "")
    name = filename_from_disposition(headers.get("content-disposition"))
    media_type = _media_type(content_type) if content_type else ""
    if not media_type and name:
        media_type = mimetypes.guess_type(name)[0] or ""
    media_type = media_type or "application/octet-stream"
    if not name:
        name = _DEFAULT_FILENAME + (mimetypes.guess_extension(media_type) or "")
    return FileMeta(name=name, size=len(body), media_type=media_type)


def classify(
    output_type: DataKind,
    headers: Mapping[str, str],
    body: bytes,
) -> ClassifiedResponse:
    """Classify a response body as TEXT or FILE and decode it accordingly."""
    lowered = _lower_headers(headers)
    content_type = lowered.get("content-type", "")
    media_type = _media_type(content_type) if content_type else ""

    as_file = (
        DataKind(output_type) == DataKind.FILE
        or is_attachment(lowered.get("content-disposition"))
        or (
            bool(media_type)
            and not is_json_media_type(media_type)
            and not is_text_media_type(media_type)
        )
    )
    if as_file:
        return ClassifiedResponse(
            kind=DataKind.FILE,
            is_binary=True,
            size=len(body),
            file_meta=_file_meta(lowered, body),
        )

    text = _decode(body, _charset(content_type))
    try:
        parsed = json.loads(text)
    except (ValueError, RecursionError):
        return ClassifiedResponse(
            kind=DataKind.TEXT,
            text_value=text,
            size=len(body),
            is_binary=contains_binary(text),
        )
    return ClassifiedResponse(
        kind=DataKind.TEXT,
        text_value=text,
        json_value=parsed,
        is_json=True,
        size=len(body),
    )


def response_snapshot(classified: ClassifiedResponse | None) -> str | None:
    """Textual form of a classified response suitable for the record store."""
    if classified is None:
        return None
    if classified.kind == DataKind.FILE and classified.file_meta is not None:
        meta = classified.file_meta
        return json.dumps({
            "binary": True,
            "fileName": meta.name,
            "size": meta.size,
            "mediaType": meta.media_type,
        })
    text = classified.text_value or ""
    if classified.is_binary:
        return json.dumps({"binary": True, "size": classified.size})
    return text[:_MAX_TEXT_SNAPSHOT]


def format_for_display(snapshot: str | None) -> str:
    """Render a stored response snapshot for human display."""
    if not snapshot:
        return "No response"
    try:
        parsed = json.loads(snapshot)
    except (ValueError, RecursionError):
        if contains_binary(snapshot):
            return _BINARY_PLACEHOLDER
        return snapshot
    if isinstance(parsed, dict) and parsed.get("binary") is True:
        name = parsed.get("fileName")
        size = parsed.get("size", 0)
        if name:
            return f"[Binary file '{name}' ({size} bytes)]"
        return f"[Binary content ({size} bytes)]"
    return json.dumps(parsed, indent=2, ensure_ascii=False)
