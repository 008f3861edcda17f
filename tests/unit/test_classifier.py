"""Tests for response classification and display formatting."""

from __future__ import annotations

import json

import pytest

from hookmeter.engine.classifier import (
    classify,
    contains_binary,
    filename_from_disposition,
    format_for_display,
    response_snapshot,
)
from hookmeter.models import DataKind


class TestClassifyText:
    def test_json_body_parsed(self) -> None:
        result = classify(
            DataKind.TEXT, {"Content-Type": "application/json"}, b'{"summary":"ok"}',
        )
        assert result.kind == DataKind.TEXT
        assert result.is_json
        assert result.value == {"summary": "ok"}

    def test_vendor_json_media_type(self) -> None:
        result = classify(
            DataKind.TEXT, {"content-type": "application/problem+json"}, b'{"a":1}',
        )
        assert result.kind == DataKind.TEXT
        assert result.json_value == {"a": 1}

    def test_malformed_json_falls_back_to_text(self) -> None:
        result = classify(DataKind.TEXT, {"content-type": "application/json"}, b"{oops")
        assert result.kind == DataKind.TEXT
        assert not result.is_json
        assert result.value == "{oops"

    def test_plain_text(self) -> None:
        result = classify(DataKind.TEXT, {"content-type": "text/plain"}, b"done")
        assert result.text_value == "done"
        assert not result.is_binary

    def test_missing_content_type_is_text(self) -> None:
        result = classify(DataKind.TEXT, {}, b"[1, 2]")
        assert result.kind == DataKind.TEXT
        assert result.json_value == [1, 2]

    def test_charset_respected(self) -> None:
        body = "café".encode("latin-1")
        result = classify(DataKind.TEXT, {"content-type": "text/plain; charset=latin-1"}, body)
        assert result.text_value == "café"

    def test_undecodable_bytes_flagged_binary(self) -> None:
        result = classify(DataKind.TEXT, {"content-type": "text/plain"}, b"\xff\xfe\x00ab")
        assert result.kind == DataKind.TEXT
        assert result.is_binary

    def test_empty_body(self) -> None:
        result = classify(DataKind.TEXT, {}, b"")
        assert result.kind == DataKind.TEXT
        assert result.text_value == ""
        assert response_snapshot(result) == ""

    def test_deeply_nested_json_falls_back_to_text(self) -> None:
        body = b"[" * 100_000
        result = classify(DataKind.TEXT, {"content-type": "application/json"}, body)
        assert result.kind == DataKind.TEXT
        assert not result.is_json
        assert result.size == len(body)

    def test_json_classification_is_idempotent(self) -> None:
        headers = {"content-type": "application/json"}
        body = b'{"items": [1, 2], "name": "caf\xc3\xa9"}'
        first = classify(DataKind.TEXT, headers, body)
        second = classify(DataKind.TEXT, headers, body)
        assert first == second
        assert first.value == {"items": [1, 2], "name": "café"}


class TestClassifyFile:
    def test_output_type_file_forces_file(self) -> None:
        result = classify(DataKind.FILE, {"content-type": "application/json"}, b"{}")
        assert result.kind == DataKind.FILE

    def test_attachment_disposition(self) -> None:
        result = classify(
            DataKind.TEXT,
            {
                "content-type": "text/csv",
                "content-disposition": 'attachment; filename="rows.csv"',
            },
            b"a,b\n1,2\n",
        )
        assert result.kind == DataKind.FILE
        assert result.file_meta is not None
        assert result.file_meta.name == "rows.csv"
        assert result.file_meta.size == 8

    def test_binary_media_type_is_file(self) -> None:
        body = b"\x89PNG\r\n\x1a\n"
        result = classify(DataKind.TEXT, {"content-type": "image/png"}, body)
        assert result.kind == DataKind.FILE
        assert result.file_meta is not None
        assert result.file_meta.name == "download.png"
        assert result.file_meta.media_type == "image/png"
        assert result.file_meta.size == len(body)

    def test_default_name_without_media_type(self) -> None:
        result = classify(DataKind.FILE, {}, b"raw")
        assert result.file_meta is not None
        assert result.file_meta.media_type == "application/octet-stream"
        assert result.file_meta.name.startswith("download")

    def test_classification_is_idempotent(self) -> None:
        headers = {"content-type": "application/pdf"}
        first = classify(DataKind.FILE, headers, b"%PDF-1.4")
        second = classify(DataKind.FILE, headers, b"%PDF-1.4")
        assert first == second


class TestFilenameFromDisposition:
    @pytest.mark.parametrize(
        ("header", "expected"),
        [
            ('attachment; filename="report.pdf"', "report.pdf"),
            ("attachment; filename=report.pdf", "report.pdf"),
            ("attachment; filename*=UTF-8''r%C3%A9sum%C3%A9.pdf", "résumé.pdf"),
            (
                "attachment; filename=\"fallback.pdf\"; filename*=UTF-8''real.pdf",
                "real.pdf",
            ),
            ("inline", None),
            (None, None),
        ],
    )
    def test_parsing(self, header: str | None, expected: str | None) -> None:
        assert filename_from_disposition(header) == expected


class TestContainsBinary:
    @pytest.mark.parametrize(
        "text",
        ["abc\x00def", "bell\x07", "\x85next", "bad \ufffd char", 'escaped "\\u0000"'],
    )
    def test_binary(self, text: str) -> None:
        assert contains_binary(text)

    @pytest.mark.parametrize("text", ["", None, "plain text\nwith\ttabs", "ünïcödé"])
    def test_not_binary(self, text: str | None) -> None:
        assert not contains_binary(text)


class TestSnapshotAndDisplay:
    def test_file_snapshot_is_marker(self) -> None:
        result = classify(
            DataKind.FILE,
            {"content-type": "application/pdf", "content-disposition": "attachment; filename=a.pdf"},
            b"%PDF",
        )
        snapshot = json.loads(response_snapshot(result) or "")
        assert snapshot == {
            "binary": True, "fileName": "a.pdf", "size": 4, "mediaType": "application/pdf",
        }

    def test_binary_text_snapshot_is_marker(self) -> None:
        result = classify(DataKind.TEXT, {"content-type": "text/plain"}, b"ab\x00cd")
        assert json.loads(response_snapshot(result) or "") == {"binary": True, "size": 5}

    def test_none_snapshot(self) -> None:
        assert response_snapshot(None) is None

    def test_display_pretty_json(self) -> None:
        assert format_for_display('{"a":1}') == '{\n  "a": 1\n}'

    def test_display_plain_text(self) -> None:
        assert format_for_display("all good") == "all good"

    def test_display_binary_marker(self) -> None:
        shown = format_for_display(json.dumps({"binary": True, "fileName": "x.zip", "size": 9}))
        assert shown == "[Binary file 'x.zip' (9 bytes)]"

    def test_display_binary_text(self) -> None:
        assert format_for_display("junk\x01data") == (
            "[Binary content received - cannot be displayed]"
        )

    @pytest.mark.parametrize("snapshot", [None, ""])
    def test_display_empty(self, snapshot: str | None) -> None:
        assert format_for_display(snapshot) == "No response"

    def test_display_deeply_nested_json(self) -> None:
        snapshot = "[" * 100_000
        assert format_for_display(snapshot) == snapshot
