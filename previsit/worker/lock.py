"""
Processing lock manager.

A stage owns an appointment only while it holds the lease written by
``worker.db.acquire_processing_lock``.  Release is best-effort: a failed
release is logged and the stale lease simply expires after its timeout.  An
illegal release target is a caller bug and propagates.
"""
from __future__ import annotations

import logging
import secrets
import time

from sqlalchemy.ext.asyncio import AsyncSession

from previsit.worker import db as db_handler
from previsit.worker.errors import IllegalTransitionError
from previsit.worker.status import (
    LOCKABLE_FOR_FILES,
    LOCKABLE_FOR_SUMMARY,
    STAGE_LEASE_STATUS,
    ProcessingStatus,
)

logger = logging.getLogger(__name__)

_ELIGIBLE_BY_STAGE = {
    "files": LOCKABLE_FOR_FILES,
    "summary": LOCKABLE_FOR_SUMMARY,
}


def new_instance_id() -> str:
    return f"instance_{int(time.time() * 1000)}_{secrets.token_hex(6)}"


class ProcessingLease:
    """One stage invocation's claim on an appointment."""

    def __init__(
        self,
        db: AsyncSession,
        appointment_id: str,
        *,
        stage: str = "files",
        timeout_minutes: float = 5.0,
        instance_id: str | None = None,
    ):
        if stage not in _ELIGIBLE_BY_STAGE:
            raise ValueError(f"Unknown stage for lease: {stage!r}")
        self.db = db
        self.appointment_id = appointment_id
        self.stage = stage
        self.timeout_minutes = timeout_minutes
        self.instance_id = instance_id or new_instance_id()
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    async def acquire(self) -> bool:
        self._held = await db_handler.acquire_processing_lock(
            self.db,
            self.appointment_id,
            self.instance_id,
            self.timeout_minutes,
            eligible=_ELIGIBLE_BY_STAGE[self.stage],
            lease_status=STAGE_LEASE_STATUS[self.stage],
        )
        return self._held

    async def release(
        self,
        final_status: ProcessingStatus | str,
        error_message: str | None = None,
    ) -> bool:
        """Release the lease with *final_status*. Store errors are logged, not raised; a second call is a no-op."""
        if not self._held:
            return False
        self._held = False
        try:
            return await db_handler.release_processing_lock(
                self.db,
                self.appointment_id,
                self.instance_id,
                final_status,
                error_message=error_message,
            )
        except IllegalTransitionError:
            raise
        except Exception as exc:
            logger.warning(
                "[%s] Failed to release processing lock %s (not critical, lease expires in %.0f min): %s",
                self.appointment_id, self.instance_id, self.timeout_minutes, exc,
            )
            await db_handler.safe_rollback(self.db)
            return False
