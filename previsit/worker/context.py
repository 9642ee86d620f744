"""
Pipeline run context.

Invocation-scoped state shared by the file stage and the summary stage: the
session, the appointment, the stage name, and the per-run counters.  Nothing
here outlives the invocation that built it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from previsit.worker.progress import STAGE_STEPS, emit_progress

logger = logging.getLogger(__name__)


@dataclass
class PipelineRunContext:
    """Holds run-scoped state for one stage invocation."""

    db: AsyncSession
    appointment_id: str
    stage: str  # files | summary
    request_id: str | None = None
    instance_id: str | None = None

    total_files: int = 0
    succeeded_files: int = 0
    failed_files: int = 0

    # ------------------------------------------------------------------ emit
    async def emit(
        self,
        step_key: str,
        message: str,
        *,
        status: str = "completed",
        meta: dict | None = None,
        percent: float | None = None,
        step_index: int | None = None,
    ) -> bool:
        """Emit a progress event for *step_key* using the stage's step catalogue."""
        default_index, default_pct = STAGE_STEPS.get(self.stage, {}).get(step_key, (0, 0))
        idx = default_index if step_index is None else step_index
        pct = default_pct if percent is None else percent
        ok = await emit_progress(
            self.db,
            self.appointment_id,
            self.stage,
            idx,
            step_key,
            status,
            message,
            pct,
            meta,
        )
        return ok

    async def emit_error(self, step_key: str, message: str, *, meta: dict | None = None) -> bool:
        return await self.emit(step_key, message, status="error", meta=meta)

    # ----------------------------------------------------- progress helpers
    @property
    def completed_files(self) -> int:
        return self.succeeded_files + self.failed_files


@dataclass
class StageResponse:
    """HTTP-shaped outcome of one stage invocation."""

    status_code: int
    body: dict[str, Any]

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @classmethod
    def success(cls, message: str, **extra: Any) -> "StageResponse":
        return cls(200, {"success": True, "message": message, **extra})

    @classmethod
    def already_processing(cls, appointment_id: str) -> "StageResponse":
        """Lease held elsewhere (or state not eligible): a benign no-op for the caller."""
        return cls(409, {
            "success": True,
            "message": "Appointment is already being processed by another instance",
            "appointment_id": appointment_id,
            "concurrent_processing": True,
        })

    @classmethod
    def failure(cls, status_code: int, error: str, **extra: Any) -> "StageResponse":
        return cls(status_code, {"success": False, "error": error, **extra})
