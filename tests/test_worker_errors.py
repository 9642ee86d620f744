"""Unit tests for previsit.worker.errors."""
from __future__ import annotations

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest

from previsit.worker.context import PipelineRunContext
from previsit.worker.errors import (
    AIServiceError,
    FileTooLargeError,
    InsufficientDataError,
    RemoteAssetTimeoutError,
    SummaryParseError,
    UnsupportedFileTypeError,
    classify_error,
    record_file_failure,
    truncate_message,
)


def _make_ctx() -> PipelineRunContext:
    return PipelineRunContext(db=AsyncMock(), appointment_id=str(uuid4()), stage="files")


def _file():
    return SimpleNamespace(id=uuid4(), file_name="scan.pdf", file_type="application/pdf")


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("error,code", [
    (FileTooLargeError("big"), "file_too_large"),
    (UnsupportedFileTypeError("txt"), "unsupported_type"),
    (RemoteAssetTimeoutError("slow"), "remote_timeout"),
    (AIServiceError("503"), "ai_failure"),
    (SummaryParseError("bad"), "parse_error"),
    (InsufficientDataError("none"), "insufficient_data"),
    (json.JSONDecodeError("bad", "", 0), "parse_error"),
    (TimeoutError("t"), "ai_failure"),
    (RuntimeError("x"), "other"),
])
def test_classify_error(error, code):
    assert classify_error(error) == code


def test_truncate_message():
    assert truncate_message("x" * 600) == "x" * 500
    assert truncate_message("") == "Unknown error"
    assert truncate_message(None) == "Unknown error"


# ---------------------------------------------------------------------------
# record_file_failure
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_record_file_failure_marks_file_processed_with_note():
    ctx = _make_ctx()
    f = _file()
    with patch("previsit.worker.db.mark_file_processed", new_callable=AsyncMock) as mark:
        note = await record_file_failure(ctx, f, FileTooLargeError("File too large: 12MB exceeds 10MB limit"))
    assert note == "file_too_large: File too large: 12MB exceeds 10MB limit"
    mark.assert_awaited_once_with(ctx.db, f.id, parsed_text="", error=note)
    assert ctx.failed_files == 1


@pytest.mark.asyncio
async def test_record_file_failure_truncates_note():
    ctx = _make_ctx()
    with patch("previsit.worker.db.mark_file_processed", new_callable=AsyncMock):
        note = await record_file_failure(ctx, _file(), RuntimeError("e" * 1000), max_chars=50)
    assert len(note) == 50
    assert note.startswith("other: ")


@pytest.mark.asyncio
async def test_record_file_failure_survives_persist_error():
    ctx = _make_ctx()
    with patch(
        "previsit.worker.db.mark_file_processed",
        new_callable=AsyncMock,
        side_effect=RuntimeError("db down"),
    ):
        note = await record_file_failure(ctx, _file(), AIServiceError("503"))
    assert note.startswith("ai_failure")
    assert ctx.failed_files == 1
