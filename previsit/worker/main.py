"""
Stage entry-points.

Thin shell: HTTP body -> trigger -> per-invocation session and clients ->
``coordinator.run_file_stage`` / ``summary.run_summary_stage``.
Business logic lives in ``previsit.worker.{coordinator, file_extraction,
summary}``; DB access via ``previsit.worker.db``.
"""
from __future__ import annotations

import logging
from typing import Any, Callable
from uuid import UUID

from previsit.database import AsyncSessionLocal
from previsit.services.llm_provider import LLMProvider, get_llm_provider
from previsit.services.storage import StorageClient
from previsit.worker.config import HANDOFF_MODE_INPROCESS, WorkerConfig, load_worker_config
from previsit.worker.context import StageResponse
from previsit.worker.coordinator import run_file_stage
from previsit.worker.errors import classify_error, truncate_message
from previsit.worker.handoff import InProcessHandoff, SummaryHandoff
from previsit.worker.summary import run_summary_stage
from previsit.worker.triggers import (
    AppointmentInsert,
    DirectTrigger,
    InvalidTriggerError,
    noop_message,
    parse_trigger,
    request_id_for,
    resolve_appointment_id,
)

logger = logging.getLogger(__name__)


def _is_uuid(value: str) -> bool:
    try:
        UUID(str(value))
    except (TypeError, ValueError):
        return False
    return True


def _unhandled(appointment_id: str, what: str, exc: Exception, cfg: WorkerConfig) -> StageResponse:
    """500 for failures the stage itself could not catch (e.g. the store is down while claiming the lease)."""
    message = truncate_message(exc, cfg.error_message_max_chars)
    logger.error("[%s] Error in %s: %s", appointment_id, what, message, exc_info=True)
    return StageResponse.failure(500, message, appointment_id=appointment_id, error_code=classify_error(exc))


def default_handoff(
    cfg: WorkerConfig,
    session_factory: Callable[[], Any] = AsyncSessionLocal,
    ai_factory: Callable[[], LLMProvider] = get_llm_provider,
) -> SummaryHandoff | InProcessHandoff:
    """HTTP hand-off to the summary endpoint, or an in-process run when ``handoff_mode`` is ``inprocess``."""
    if cfg.handoff_mode == HANDOFF_MODE_INPROCESS:
        return InProcessHandoff(session_factory, ai_factory, cfg)
    return SummaryHandoff(timeout=cfg.handoff_timeout_seconds)


async def handle_file_trigger(
    body: Any,
    *,
    cfg: WorkerConfig | None = None,
    session_factory: Callable[[], Any] = AsyncSessionLocal,
    ai_factory: Callable[[], LLMProvider] = get_llm_provider,
    storage_factory: Callable[[], StorageClient] = StorageClient,
    handoff: Any = None,
) -> StageResponse:
    """Entry-point of the file stage (``process_patient_files``)."""
    try:
        trigger = parse_trigger(body)
    except InvalidTriggerError as exc:
        logger.error("Rejected trigger: %s", exc)
        return StageResponse.failure(400, str(exc), received_body=body)

    appointment_id = resolve_appointment_id(trigger)
    if not appointment_id:
        message = noop_message(trigger)
        logger.info("Trigger ignored: %s", message)
        return StageResponse.success(message)
    if not _is_uuid(appointment_id):
        return StageResponse.failure(400, "Invalid appointment_id", appointment_id=appointment_id)

    request_id = request_id_for(trigger)
    logger.info("[%s] File stage triggered (%s, request %s)", appointment_id, type(trigger).__name__, request_id)

    cfg = cfg or load_worker_config()
    try:
        ai = ai_factory()
        storage = storage_factory()
    except Exception as exc:
        logger.error("[%s] Service configuration error: %s", appointment_id, exc)
        return StageResponse.failure(500, f"Service configuration error: {exc}", appointment_id=appointment_id)

    try:
        async with session_factory() as db:
            return await run_file_stage(
                appointment_id,
                db=db,
                storage=storage,
                ai=ai,
                cfg=cfg,
                handoff=handoff or default_handoff(cfg, session_factory, ai_factory),
                request_id=request_id,
            )
    except Exception as exc:
        return _unhandled(appointment_id, "file processing", exc, cfg)


async def handle_summary_trigger(
    body: Any,
    *,
    cfg: WorkerConfig | None = None,
    session_factory: Callable[[], Any] = AsyncSessionLocal,
    ai_factory: Callable[[], LLMProvider] = get_llm_provider,
) -> StageResponse:
    """Entry-point of the summary stage (``generate_clinical_summary``)."""
    try:
        trigger = parse_trigger(body)
    except InvalidTriggerError as exc:
        logger.error("Rejected trigger: %s", exc)
        return StageResponse.failure(400, str(exc), received_body=body)

    if not isinstance(trigger, (DirectTrigger, AppointmentInsert)):
        return StageResponse.success("Ignored: Not an appointment record.")

    appointment_id = resolve_appointment_id(trigger)
    if not appointment_id or not _is_uuid(appointment_id):
        return StageResponse.failure(400, "Invalid appointment_id", appointment_id=appointment_id)

    cfg = cfg or load_worker_config()
    try:
        ai = ai_factory()
    except Exception as exc:
        logger.error("[%s] Service configuration error: %s", appointment_id, exc)
        return StageResponse.failure(500, f"Service configuration error: {exc}", appointment_id=appointment_id)

    try:
        async with session_factory() as db:
            return await run_summary_stage(
                appointment_id,
                db=db,
                ai=ai,
                cfg=cfg,
                request_id=request_id_for(trigger),
            )
    except Exception as exc:
        return _unhandled(appointment_id, "clinical summary generation", exc, cfg)
