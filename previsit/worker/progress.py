"""
Progress event emitter.

Every stage reports its steps through :func:`emit_progress`.  The event log
has exactly two outcomes per step (``completed`` / ``error``) and a percentage
clamped into 0..100.  A failed write is logged and swallowed: progress
reporting never aborts the stage it observes.
"""
from __future__ import annotations

import logging
import math
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from previsit.worker import db as db_handler

logger = logging.getLogger(__name__)

STATUS_COMPLETED = "completed"
STATUS_ERROR = "error"

_FAILURE_TOKENS = ("error", "fail")

# step_key -> (step_index, percent) per stage, in emission order.
FILES_STEPS = {
    "init": (1, 10),
    "collect_files": (2, 20),
    "extract": (3, 30),
    "persist": (4, 40),
    "trigger_summary": (5, 50),
}
SUMMARY_STEPS = {
    "init": (0, 50),
    "collect_data": (1, 60),
    "synthesize_documents": (2, 70),
    "build_prompt": (3, 80),
    "reasoning_start": (4, 85),
    "reasoning_complete": (4, 90),
    "reasoning": (4, 90),
    "publish": (5, 100),
}
STAGE_STEPS = {"files": FILES_STEPS, "summary": SUMMARY_STEPS}


def canonical_status(status: Any) -> str:
    """Collapse any failure-like token to ``error`` and everything else to ``completed``."""
    token = str(status or "").strip().lower()
    if any(t in token for t in _FAILURE_TOKENS):
        return STATUS_ERROR
    return STATUS_COMPLETED


def clamp_percent(value: Any) -> int:
    try:
        pct = float(value)
    except (TypeError, ValueError):
        return 0
    if math.isnan(pct) or math.isinf(pct):
        return 0
    return int(max(0, min(100, round(pct))))


async def emit_progress(
    db: AsyncSession,
    appointment_id: str | UUID,
    stage: str,
    step_index: int,
    step_key: str,
    status: str,
    message: str,
    percent: Any,
    meta: dict | None = None,
) -> bool:
    """Append one ProgressEvent. Returns False (never raises) if the write failed."""
    canon = canonical_status(status)
    pct = clamp_percent(percent)
    try:
        await db_handler.insert_progress_event(
            db,
            appointment_id=db_handler.as_uuid(appointment_id),
            stage=stage,
            step_index=int(step_index),
            step_key=step_key,
            status=canon,
            message=message,
            progress_percent=pct,
            meta=meta,
        )
    except Exception as exc:
        logger.warning(
            "[%s] emit_progress(%s/%s) failed, continuing: %s",
            appointment_id, stage, step_key, exc,
        )
        await db_handler.safe_rollback(db)
        return False
    logger.info("[%s] Progress: %s step %s %s - %s%%", appointment_id, stage, step_index, canon, pct)
    return True
