"""
File stage coordinator.

The single orchestration function for the first pipeline stage:
1. Debounce so near-simultaneous uploads land in one run.
2. Claim the appointment lease (``pending|triggered -> processing``).
3. Extract every unprocessed file (per-file failures never abort the batch).
4. Evaluate the completion gate and release the lease with
   ``files_processed`` or ``failed``.
5. Hand off to the summary stage when the batch is complete.

Every exit path releases the lease.
"""
from __future__ import annotations

import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from previsit.services.llm_provider import LLMProvider
from previsit.services.storage import StorageClient
from previsit.worker import db as db_handler
from previsit.worker.config import WorkerConfig
from previsit.worker.context import PipelineRunContext, StageResponse
from previsit.worker.errors import classify_error, truncate_message
from previsit.worker.file_extraction import process_appointment_files
from previsit.worker.handoff import HandoffOutcome, new_request_id
from previsit.worker.lock import ProcessingLease
from previsit.worker.status import ProcessingStatus

logger = logging.getLogger(__name__)

GATE_INCOMPLETE_MESSAGE = "Not all files reached a terminal state"


async def hand_off_to_summary(ctx: PipelineRunContext, handoff) -> HandoffOutcome:
    """Request the summary stage and record the outcome as a ``trigger_summary`` event."""
    await ctx.emit("trigger_summary", "Clinical summary generation requested")
    outcome = await handoff.dispatch(ctx.appointment_id, new_request_id())
    if not outcome.ok:
        await ctx.emit_error(
            "trigger_summary",
            f"Failed to trigger clinical summary: {outcome.detail or outcome.status_code}",
            meta={"status_code": outcome.status_code},
        )
    return outcome


async def run_file_stage(
    appointment_id: str,
    *,
    db: AsyncSession,
    storage: StorageClient,
    ai: LLMProvider,
    cfg: WorkerConfig,
    handoff,
    request_id: str | None = None,
) -> StageResponse:
    """Run the file stage for one appointment and return the HTTP-shaped outcome."""
    if cfg.debounce_seconds > 0:
        logger.info("[%s] Waiting %.1fs to batch file uploads...", appointment_id, cfg.debounce_seconds)
        await asyncio.sleep(cfg.debounce_seconds)

    lease = ProcessingLease(db, appointment_id, stage="files", timeout_minutes=cfg.lease_timeout_minutes)
    if not await lease.acquire():
        logger.info("[%s] Appointment already being processed by another instance", appointment_id)
        return StageResponse.already_processing(appointment_id)

    ctx = PipelineRunContext(
        db=db,
        appointment_id=appointment_id,
        stage="files",
        request_id=request_id,
        instance_id=lease.instance_id,
    )
    logger.info("[%s] Acquired processing lock (instance %s)", appointment_id, lease.instance_id)

    try:
        await ctx.emit("init", "File processing started")

        files = await db_handler.get_unprocessed_files(db, appointment_id)
        if not files:
            logger.info("[%s] No unprocessed files found", appointment_id)
            await ctx.emit("collect_files", "No files to process", meta={"files": 0})
            await lease.release(ProcessingStatus.FILES_PROCESSED)
            outcome = await hand_off_to_summary(ctx, handoff)
            return StageResponse.success(
                "No files to process",
                appointment_id=appointment_id,
                processed_files=0,
                summary_triggered=outcome.ok,
            )

        logger.info("[%s] Found %s files to process", appointment_id, len(files))
        await ctx.emit("collect_files", f"Found {len(files)} file(s) to process", meta={"files": len(files)})

        batch = await process_appointment_files(ctx, storage=storage, ai=ai, cfg=cfg, files=files)
        await ctx.emit(
            "extract",
            f"File extraction complete: {batch.succeeded} successful, {batch.failed} failed",
            meta={"succeeded": batch.succeeded, "failed": batch.failed},
        )

        complete = await db_handler.all_files_processed(db, appointment_id)
        if complete:
            await lease.release(ProcessingStatus.FILES_PROCESSED)
        else:
            logger.warning("[%s] %s", appointment_id, GATE_INCOMPLETE_MESSAGE)
            await lease.release(ProcessingStatus.FAILED, error_message=GATE_INCOMPLETE_MESSAGE)
        await ctx.emit("persist", "Results saved to database", meta={"all_files_processed": complete})

        summary_triggered = False
        if complete:
            summary_triggered = (await hand_off_to_summary(ctx, handoff)).ok

        return StageResponse.success(
            f"Processed {batch.total} files",
            appointment_id=appointment_id,
            processed_files=batch.total,
            successful=batch.succeeded,
            failed=batch.failed,
            all_files_processed=complete,
            summary_triggered=summary_triggered,
            results=[r.to_dict() for r in batch.results],
        )

    except Exception as exc:
        message = truncate_message(exc, cfg.error_message_max_chars)
        logger.error("[%s] Error in file processing: %s", appointment_id, message, exc_info=True)
        await db_handler.safe_rollback(db)
        await ctx.emit_error(
            "init", f"File processing failed: {message}", meta={"error_code": classify_error(exc)},
        )
        await lease.release(ProcessingStatus.FAILED, error_message=message)
        return StageResponse.failure(500, message, appointment_id=appointment_id)
