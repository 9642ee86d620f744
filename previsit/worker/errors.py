"""
Pipeline error taxonomy and per-file failure recording.

Centralises the "classify -> persist processed=True with an error note -> emit"
pattern so every file failure path (oversized, unsupported type, remote asset
timeout, AI error, storage error) goes through :func:`record_file_failure`.
"""
from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from previsit.worker.context import PipelineRunContext

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Base class for failures that end up in a persisted error field."""

    code = "other"


class IllegalTransitionError(PipelineError):
    code = "illegal_transition"


class InsufficientDataError(PipelineError):
    code = "insufficient_data"


class AIServiceError(PipelineError):
    code = "ai_failure"


class SummaryParseError(PipelineError):
    code = "parse_error"


class FileExtractionError(PipelineError):
    code = "extraction_failed"


class FileTooLargeError(FileExtractionError):
    code = "file_too_large"


class UnsupportedFileTypeError(FileExtractionError):
    code = "unsupported_type"


class RemoteAssetTimeoutError(FileExtractionError):
    code = "remote_timeout"


class StorageError(FileExtractionError):
    code = "storage_error"


def classify_error(error: Exception | str) -> str:
    """Map an exception to a stable error code for event metadata and file notes."""
    if isinstance(error, PipelineError):
        return error.code
    if isinstance(error, json.JSONDecodeError):
        return "parse_error"
    if isinstance(error, (TimeoutError, ConnectionError)):
        return "ai_failure"
    return "other"


def truncate_message(message: str | Exception | None, limit: int = 500) -> str:
    text = str(message or "").strip() or "Unknown error"
    return text[:limit]


async def record_file_failure(
    ctx: "PipelineRunContext",
    file,
    error: Exception | str,
    *,
    max_chars: int = 500,
) -> str:
    """Classify, persist, and report a single file's extraction failure.

    * Marks the file ``processed=True`` with empty text and a
      ``"<code>: <reason>"`` note so the batch can complete deterministically.
    * Records the failure in ``ctx.failed_files``.
    * Never raises: persistence problems are logged and the batch continues.

    Returns the error note written to the file.
    """
    from previsit.worker import db as db_handler

    code = classify_error(error)
    note = truncate_message(f"{code}: {error}", max_chars)

    try:
        await db_handler.mark_file_processed(ctx.db, file.id, parsed_text="", error=note)
    except Exception as persist_exc:
        logger.error(
            "[%s] Could not persist failure for file %s: %s",
            ctx.appointment_id, getattr(file, "id", None), persist_exc, exc_info=True,
        )

    ctx.failed_files += 1
    logger.warning(
        "[%s] File %s (%s) failed: %s",
        ctx.appointment_id, getattr(file, "file_name", "?"), getattr(file, "file_type", "?"), note,
    )
    return note
