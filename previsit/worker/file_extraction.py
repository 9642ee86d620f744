"""
File extraction worker.

Turns every unprocessed upload of an appointment into text:

* PDF   -> resumable upload to the AI service, poll until the asset is
           ``ACTIVE``, extract with the objective-extraction prompt, delete
           the remote asset.
* image -> inline base64 + the objective-description prompt.

Each file ends in a terminal ``processed=True`` state whatever happens to it,
and one file's failure never aborts the batch.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from previsit.services.llm_provider import (
    FILE_STATE_ACTIVE,
    FILE_STATE_FAILED,
    LLMProvider,
    RemoteFile,
)
from previsit.services.prompt_registry import get_prompt
from previsit.services.storage import StorageClient
from previsit.worker import db as db_handler
from previsit.worker.config import WorkerConfig
from previsit.worker.context import PipelineRunContext
from previsit.worker.errors import (
    FileTooLargeError,
    RemoteAssetTimeoutError,
    UnsupportedFileTypeError,
    record_file_failure,
)

logger = logging.getLogger(__name__)

PDF_MIME = "application/pdf"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


@dataclass
class FileResult:
    file_id: str
    file_name: str
    file_type: str
    file_size: int | None
    status: str
    error: str | None = None
    text_length: int = 0
    processing_time_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_id": self.file_id,
            "file_name": self.file_name,
            "file_type": self.file_type,
            "file_size": self.file_size,
            "status": self.status,
            "error_message": self.error,
            "text_length": self.text_length,
            "processing_time_ms": self.processing_time_ms,
        }


@dataclass
class BatchResult:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    results: list[FileResult] = field(default_factory=list)

    def add(self, result: FileResult) -> None:
        self.results.append(result)
        if result.status == STATUS_COMPLETED:
            self.succeeded += 1
        else:
            self.failed += 1


def _mb(size: int) -> int:
    return round(size / 1024 / 1024)


def is_supported_type(mime_type: str | None) -> bool:
    mime = (mime_type or "").lower()
    return mime == PDF_MIME or mime.startswith("image/")


async def wait_until_active(
    ai: LLMProvider,
    remote: RemoteFile,
    *,
    timeout_seconds: float,
    poll_interval: float,
) -> None:
    """Poll the remote asset until ``ACTIVE``; ``FAILED`` or the deadline raise RemoteAssetTimeoutError."""
    state = remote.state
    deadline = time.monotonic() + timeout_seconds
    while state != FILE_STATE_ACTIVE:
        if state == FILE_STATE_FAILED:
            raise RemoteAssetTimeoutError(f"File processing failed on the AI service: {remote.name}")
        if time.monotonic() >= deadline:
            raise RemoteAssetTimeoutError(
                f"File processing timeout. Final state: {state} after {timeout_seconds:.0f}s"
            )
        await asyncio.sleep(poll_interval)
        state = await ai.get_file_state(remote.name)
        logger.debug("Remote asset %s state: %s", remote.name, state)


async def extract_pdf(data: bytes, file, *, ai: LLMProvider, cfg: WorkerConfig) -> str:
    """Upload -> wait for ACTIVE -> extract; the remote asset is always deleted afterwards."""
    remote = await ai.upload_file(data, PDF_MIME, file.file_name or "document.pdf")
    try:
        await wait_until_active(
            ai,
            remote,
            timeout_seconds=cfg.file_ready_timeout_seconds,
            poll_interval=cfg.file_poll_interval_seconds,
        )
        return await ai.generate_with_file(get_prompt("pdf_extraction"), remote, max_output_tokens=8192)
    finally:
        try:
            await ai.delete_file(remote.name)
        except Exception as cleanup_exc:
            logger.warning("Failed to clean up uploaded file %s: %s", remote.name, cleanup_exc)


async def extract_image(data: bytes, file, *, ai: LLMProvider) -> str:
    return await ai.generate_with_inline_data(
        get_prompt("image_analysis"), data, file.file_type, max_output_tokens=4096,
    )


async def extract_file(file, *, storage: StorageClient, ai: LLMProvider, cfg: WorkerConfig) -> str:
    """Extract text from one PatientFile. Raises a FileExtractionError (or AIServiceError) on failure."""
    mime = (file.file_type or "").lower()
    if not is_supported_type(mime):
        raise UnsupportedFileTypeError(f"Unsupported file type: {file.file_type or 'unknown'}")

    declared = file.file_size or 0
    if declared > cfg.max_file_bytes:
        raise FileTooLargeError(
            f"File too large: {_mb(declared)}MB exceeds {_mb(cfg.max_file_bytes)}MB limit"
        )

    url = await storage.signed_url(file.file_path, cfg.signed_url_ttl_seconds)
    data = await storage.download(url, cfg.max_file_bytes)
    if len(data) > cfg.max_file_bytes:
        raise FileTooLargeError(
            f"File too large: {_mb(len(data))}MB exceeds {_mb(cfg.max_file_bytes)}MB limit"
        )

    if mime == PDF_MIME:
        return await extract_pdf(data, file, ai=ai, cfg=cfg)
    return await extract_image(data, file, ai=ai)


def _base_result(file, status: str, started: float) -> FileResult:
    return FileResult(
        file_id=str(file.id),
        file_name=file.file_name or "",
        file_type=file.file_type or "",
        file_size=file.file_size,
        status=status,
        processing_time_ms=int((time.monotonic() - started) * 1000),
    )


async def process_file(
    ctx: PipelineRunContext,
    file,
    *,
    storage: StorageClient,
    ai: LLMProvider,
    cfg: WorkerConfig,
) -> FileResult:
    """Extract one file and persist its terminal state. Never raises."""
    started = time.monotonic()
    logger.info("[%s] Processing file: %s (%s)", ctx.appointment_id, file.file_name, file.file_type)
    try:
        text = await extract_file(file, storage=storage, ai=ai, cfg=cfg)
    except Exception as exc:
        note = await record_file_failure(ctx, file, exc, max_chars=cfg.error_message_max_chars)
        result = _base_result(file, STATUS_FAILED, started)
        result.error = note
        return result

    try:
        await db_handler.mark_file_processed(ctx.db, file.id, parsed_text=text)
    except Exception as exc:
        logger.error(
            "[%s] Could not persist text for file %s: %s", ctx.appointment_id, file.id, exc, exc_info=True,
        )
        await db_handler.safe_rollback(ctx.db)
        note = await record_file_failure(ctx, file, exc, max_chars=cfg.error_message_max_chars)
        result = _base_result(file, STATUS_FAILED, started)
        result.error = note
        return result

    ctx.succeeded_files += 1
    result = _base_result(file, STATUS_COMPLETED, started)
    result.text_length = len(text)
    logger.info(
        "[%s] Extracted %s chars from %s in %sms",
        ctx.appointment_id, result.text_length, file.file_name, result.processing_time_ms,
    )
    return result


async def process_appointment_files(
    ctx: PipelineRunContext,
    *,
    storage: StorageClient,
    ai: LLMProvider,
    cfg: WorkerConfig,
    files: list | None = None,
) -> BatchResult:
    """Process every unprocessed file of ``ctx.appointment_id`` sequentially.

    *files* may be passed when the caller already loaded them; otherwise the
    unprocessed set is read here.  Already-processed files are never
    selected, so a duplicate run changes nothing.
    """
    if files is None:
        files = await db_handler.get_unprocessed_files(ctx.db, ctx.appointment_id)
    batch = BatchResult(total=len(files))
    ctx.total_files = len(files)

    for file in files:
        batch.add(await process_file(ctx, file, storage=storage, ai=ai, cfg=cfg))
        logger.info("[%s] Files completed: %s/%s", ctx.appointment_id, ctx.completed_files, ctx.total_files)

    logger.info(
        "[%s] File processing completed: %s successful, %s failed",
        ctx.appointment_id, batch.succeeded, batch.failed,
    )
    return batch
