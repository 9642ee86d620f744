"""
Summary generation worker.

Second pipeline stage: claims the appointment (``files_processed ->
summarizing``), assembles the clinical context, calls the reasoning model with
retry, stores the raw output *before* parsing, then publishes the sanitized
summary and finishes the appointment as ``completed`` or ``failed``.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from previsit.services.llm_provider import LLMProvider
from previsit.services.summary_schema import parse_summary_response, sanitize_summary
from previsit.worker import db as db_handler
from previsit.worker.config import WorkerConfig
from previsit.worker.context import PipelineRunContext, StageResponse
from previsit.worker.context_builder import build_clinical_context, render_summary_prompt
from previsit.worker.errors import (
    AIServiceError,
    InsufficientDataError,
    PipelineError,
    classify_error,
    truncate_message,
)
from previsit.worker.lock import ProcessingLease
from previsit.worker.status import ProcessingStatus, SummaryStatus

logger = logging.getLogger(__name__)


async def call_with_retry(
    generate: Callable[[str], Awaitable[str]],
    prompt: str,
    cfg: WorkerConfig,
    *,
    appointment_id: str = "",
) -> str:
    """Call *generate* up to ``cfg.ai_max_attempts`` times.

    Waits ``ai_backoff_seconds * attempt`` between early attempts and
    ``ai_final_pause_seconds`` before the last one.  The final failure is
    raised as AIServiceError.
    """
    attempts = max(1, cfg.ai_max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await generate(prompt)
        except Exception as exc:
            logger.error("[%s] AI attempt %s/%s failed: %s", appointment_id, attempt, attempts, exc)
            if attempt == attempts:
                if isinstance(exc, AIServiceError):
                    raise
                raise AIServiceError(f"AI service failed after {attempts} attempts: {exc}") from exc
            if attempt == attempts - 1:
                delay = cfg.ai_final_pause_seconds
            else:
                delay = cfg.ai_backoff_seconds * attempt
            logger.info("[%s] Waiting %.1fs before next attempt...", appointment_id, delay)
            await asyncio.sleep(delay)
    raise AIServiceError("AI service was not called")


async def _mark_summary_failed(db: AsyncSession, summary_id: UUID, appointment_id: str) -> None:
    try:
        await db_handler.finalize_summary(db, summary_id, SummaryStatus.FAILED)
    except Exception as exc:
        logger.warning("[%s] Could not mark summary %s failed: %s", appointment_id, summary_id, exc)
        await db_handler.safe_rollback(db)


async def run_summary_stage(
    appointment_id: str,
    *,
    db: AsyncSession,
    ai: LLMProvider,
    cfg: WorkerConfig,
    request_id: str | None = None,
) -> StageResponse:
    """Generate and publish the clinical summary for one appointment."""
    appointment = await db_handler.get_appointment(db, appointment_id)
    if appointment is None:
        logger.error("[%s] Appointment not found", appointment_id)
        return StageResponse.failure(404, "Appointment not found", appointment_id=appointment_id)

    lease = ProcessingLease(
        db, appointment_id, stage="summary", timeout_minutes=cfg.summary_lease_timeout_minutes,
    )
    if not await lease.acquire():
        logger.info(
            "[%s] Summary lease not acquired (status=%s); skipping",
            appointment_id, appointment.ai_processing_status,
        )
        return StageResponse.already_processing(appointment_id)

    ctx = PipelineRunContext(
        db=db,
        appointment_id=appointment_id,
        stage="summary",
        request_id=request_id,
        instance_id=lease.instance_id,
    )
    summary_id: UUID | None = None
    logger.info("[%s] Processing summary (instance %s)", appointment_id, lease.instance_id)

    try:
        if not appointment.consultation_id or not appointment.patient_id:
            raise PipelineError("Missing required appointment, consultation, or patient ID.")

        await ctx.emit("init", "Clinical summary started")

        context = await build_clinical_context(db, appointment, cfg)
        await ctx.emit("collect_data", "Patient data collected successfully", meta={"source": context.source})
        await ctx.emit(
            "synthesize_documents",
            f"Synthesized {len(context.documents)} document(s)",
            meta={"documents": len(context.documents)},
        )

        if not context.has_sufficient_data():
            raise InsufficientDataError("Insufficient data for clinical summary generation")

        prompt = render_summary_prompt(context, cfg)
        await ctx.emit("build_prompt", "AI instructions built successfully", meta={"prompt_chars": len(prompt)})
        await ctx.emit("reasoning_start", "AI analysis started")

        raw_output = await call_with_retry(ai.generate, prompt, cfg, appointment_id=appointment_id)

        summary_id = await db_handler.create_summary_row(
            db,
            consultation_id=appointment.consultation_id,
            patient_id=context.patient_id or appointment.patient_id,
            appointment_id=appointment_id,
            raw_output=raw_output,
        )
        logger.info("[%s] Raw AI response stored with summary ID: %s", appointment_id, summary_id)
        await ctx.emit("reasoning_complete", "AI reasoning completed successfully")

        summary = sanitize_summary(parse_summary_response(raw_output))
        await db_handler.finalize_summary(db, summary_id, SummaryStatus.COMPLETED, summary)
        await lease.release(ProcessingStatus.COMPLETED)
        await ctx.emit("publish", "Clinical summary published successfully")

        logger.info("[%s] Clinical summary generation completed successfully", appointment_id)
        return StageResponse.success(
            "Clinical summary generated successfully",
            appointment_id=appointment_id,
            consultation_id=str(appointment.consultation_id),
            summary_id=str(summary_id),
        )

    except Exception as exc:
        message = truncate_message(exc, cfg.error_message_max_chars)
        code = classify_error(exc)
        logger.error("[%s] Error in clinical summary generation: %s", appointment_id, message, exc_info=True)
        await db_handler.safe_rollback(db)
        await ctx.emit_error("reasoning", f"AI analysis failed: {message}", meta={"error_code": code})
        await lease.release(ProcessingStatus.FAILED, error_message=message)
        if summary_id is not None:
            await _mark_summary_failed(db, summary_id, appointment_id)
        return StageResponse.failure(
            500,
            message,
            appointment_id=appointment_id,
            consultation_id=str(appointment.consultation_id) if appointment.consultation_id else None,
            error_code=code,
        )
