"""
Pipeline database handler.

All stage persistence goes through this module: the processing lease, status
transitions, file results, the completion gate, progress events, and clinical
summary rows.

Every write to ``appointments.ai_processing_status`` is a conditional UPDATE
(compare-and-swap on the current status and/or lease token); nothing here
writes that column unconditionally.
"""
from __future__ import annotations

import json as _json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import func, or_, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from previsit.models import (
    AIClinicalData,
    Appointment,
    ClinicalSummary,
    Consultation,
    PatientFile,
    Profile,
    ProgressEvent,
)
from previsit.worker.status import (
    LOCKABLE_FOR_FILES,
    ProcessingStatus,
    SummaryStatus,
    coerce_status,
    release_sources,
    validate_transition,
)

logger = logging.getLogger(__name__)


def _utc_now_naive() -> datetime:
    """Naive UTC datetime for DB (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_uuid(value: str | UUID) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


def _status_values(statuses: Iterable[ProcessingStatus]) -> list[str]:
    return sorted(coerce_status(s).value for s in statuses)


# ---------------------------------------------------------------------------
# Processing lease
# ---------------------------------------------------------------------------

def build_acquire_statement(
    appointment_id: str | UUID,
    instance_id: str,
    lock_timeout_minutes: float,
    *,
    eligible: Iterable[ProcessingStatus] = LOCKABLE_FOR_FILES,
    lease_status: ProcessingStatus = ProcessingStatus.PROCESSING,
    now: datetime | None = None,
):
    """Single conditional UPDATE that claims the lease or touches nothing.

    Matches when the appointment is in an *eligible* status, or when it is
    held in *lease_status* by a lease older than *lock_timeout_minutes*.
    """
    eligible = frozenset(eligible)
    for status in eligible:
        validate_transition(status, lease_status)
    now = now or _utc_now_naive()
    cutoff = now - timedelta(minutes=lock_timeout_minutes)
    return (
        update(Appointment)
        .where(
            Appointment.id == as_uuid(appointment_id),
            or_(
                Appointment.ai_processing_status.in_(_status_values(eligible)),
                (Appointment.ai_processing_status == coerce_status(lease_status).value)
                & (
                    Appointment.processing_started_at.is_(None)
                    | (Appointment.processing_started_at < cutoff)
                ),
            ),
        )
        .values(
            ai_processing_status=coerce_status(lease_status).value,
            processing_instance_id=instance_id,
            processing_started_at=now,
            updated_at=now,
        )
        .returning(Appointment.id)
        .execution_options(synchronize_session=False)
    )


async def acquire_processing_lock(
    db: AsyncSession,
    appointment_id: str | UUID,
    instance_id: str,
    lock_timeout_minutes: float = 5.0,
    *,
    eligible: Iterable[ProcessingStatus] = LOCKABLE_FOR_FILES,
    lease_status: ProcessingStatus = ProcessingStatus.PROCESSING,
) -> bool:
    """Claim the per-appointment processing lease.

    Returns True when this *instance_id* now owns the lease, False when another
    live instance holds it or the appointment is not in a claimable status.
    """
    stmt = build_acquire_statement(
        appointment_id, instance_id, lock_timeout_minutes,
        eligible=eligible, lease_status=lease_status,
    )
    result = await db.execute(stmt)
    row = result.first()
    await db.commit()
    acquired = row is not None
    logger.info(
        "[%s] acquire_processing_lock(%s, status=%s): %s",
        appointment_id, instance_id, coerce_status(lease_status).value,
        "acquired" if acquired else "not acquired",
    )
    return acquired


def build_release_statement(
    appointment_id: str | UUID,
    instance_id: str,
    final_status: ProcessingStatus | str,
    error_message: str | None = None,
    *,
    now: datetime | None = None,
):
    """Conditional UPDATE that sets *final_status* and clears the lease held by *instance_id*.

    Raises IllegalTransitionError before building any SQL when no held lease
    may be released into *final_status*.  A ``failed`` release records
    *error_message*; any other outcome clears the previous one.
    """
    target = coerce_status(final_status)
    allowed_sources = _status_values(release_sources(target))
    now = now or _utc_now_naive()
    values: dict[str, Any] = {
        "ai_processing_status": target.value,
        "processing_instance_id": None,
        "processing_started_at": None,
        "updated_at": now,
    }
    if target is ProcessingStatus.FAILED:
        if error_message is not None:
            values["error_message"] = error_message
    else:
        values["error_message"] = None
    return (
        update(Appointment)
        .where(
            Appointment.id == as_uuid(appointment_id),
            Appointment.processing_instance_id == instance_id,
            Appointment.ai_processing_status.in_(allowed_sources),
        )
        .values(**values)
        .returning(Appointment.id)
        .execution_options(synchronize_session=False)
    )


async def release_processing_lock(
    db: AsyncSession,
    appointment_id: str | UUID,
    instance_id: str,
    final_status: ProcessingStatus | str,
    error_message: str | None = None,
) -> bool:
    """Set *final_status* and clear the lease, but only if *instance_id* still owns it.

    Returns True when the row was updated.  A False return means the lease was
    reclaimed by another instance (or already released).
    """
    target = coerce_status(final_status)
    stmt = build_release_statement(appointment_id, instance_id, target, error_message)
    result = await db.execute(stmt)
    row = result.first()
    await db.commit()
    if row is None:
        logger.warning(
            "[%s] release_processing_lock(%s -> %s) matched no row (lease lost or already released)",
            appointment_id, instance_id, target.value,
        )
        return False
    logger.info("[%s] Released lease %s with status %s", appointment_id, instance_id, target.value)
    return True


# ---------------------------------------------------------------------------
# Appointment reads
# ---------------------------------------------------------------------------

async def get_appointment(db: AsyncSession, appointment_id: str | UUID) -> Appointment | None:
    result = await db.execute(select(Appointment).where(Appointment.id == as_uuid(appointment_id)))
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Patient files
# ---------------------------------------------------------------------------

async def get_unprocessed_files(db: AsyncSession, appointment_id: str | UUID) -> list[PatientFile]:
    """Files linked to the appointment whose ``processed`` is NULL or false, oldest first."""
    result = await db.execute(
        select(PatientFile)
        .where(
            PatientFile.appointment_id == as_uuid(appointment_id),
            or_(PatientFile.processed.is_(None), PatientFile.processed.is_(False)),
        )
        .order_by(PatientFile.created_at)
    )
    return list(result.scalars().all())


async def mark_file_processed(
    db: AsyncSession,
    file_id: str | UUID,
    *,
    parsed_text: str,
    error: str | None = None,
) -> bool:
    """Move a file to its terminal ``processed=True`` state exactly once.

    The UPDATE only matches a file that is not yet processed, so a duplicate
    run can never overwrite an earlier result.
    """
    stmt = (
        update(PatientFile)
        .where(
            PatientFile.id == as_uuid(file_id),
            or_(PatientFile.processed.is_(None), PatientFile.processed.is_(False)),
        )
        .values(
            parsed_text=parsed_text,
            processed=True,
            processing_error=error,
            updated_at=_utc_now_naive(),
        )
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    await db.commit()
    updated = (result.rowcount or 0) > 0
    if not updated:
        logger.info("[db] mark_file_processed: file %s already terminal, left untouched", file_id)
    return updated


async def count_files(db: AsyncSession, appointment_id: str | UUID, *, processed_only: bool = False) -> int:
    stmt = select(func.count()).select_from(PatientFile).where(
        PatientFile.appointment_id == as_uuid(appointment_id)
    )
    if processed_only:
        stmt = stmt.where(PatientFile.processed.is_(True))
    result = await db.execute(stmt)
    return int(result.scalar_one() or 0)


async def all_files_processed(db: AsyncSession, appointment_id: str | UUID) -> bool:
    """Batch completion gate: every linked file is ``processed=True`` (zero files counts as complete)."""
    try:
        total = await count_files(db, appointment_id)
        done = await count_files(db, appointment_id, processed_only=True)
    except Exception as exc:
        logger.error("[%s] all_files_processed: count failed: %s", appointment_id, exc, exc_info=True)
        await safe_rollback(db)
        return False
    complete = total == 0 or total == done
    logger.info("[%s] Files status: %s/%s processed, all done: %s", appointment_id, done, total, complete)
    return complete


async def get_processed_documents(db: AsyncSession, consultation_id: str | UUID) -> list[PatientFile]:
    """Processed files of a consultation that produced text, oldest first."""
    result = await db.execute(
        select(PatientFile)
        .where(
            PatientFile.consultation_id == as_uuid(consultation_id),
            PatientFile.processed.is_(True),
            PatientFile.parsed_text.is_not(None),
            PatientFile.parsed_text != "",
        )
        .order_by(PatientFile.created_at)
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Clinical data sources
# ---------------------------------------------------------------------------

async def get_clinical_data_view(db: AsyncSession, consultation_id: str | UUID) -> list[AIClinicalData]:
    result = await db.execute(
        select(AIClinicalData).where(AIClinicalData.consultation_id == as_uuid(consultation_id))
    )
    return list(result.scalars().all())


async def get_consultation(db: AsyncSession, consultation_id: str | UUID) -> Consultation | None:
    result = await db.execute(select(Consultation).where(Consultation.id == as_uuid(consultation_id)))
    return result.scalar_one_or_none()


async def get_profile(db: AsyncSession, profile_id: str | UUID | None) -> Profile | None:
    if not profile_id:
        return None
    result = await db.execute(select(Profile).where(Profile.id == as_uuid(profile_id)))
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Progress events
# ---------------------------------------------------------------------------

async def insert_progress_event(db: AsyncSession, **fields: Any) -> ProgressEvent:
    """Insert one immutable ProgressEvent, commit, and pg_notify for live listeners."""
    event = ProgressEvent(**fields)
    db.add(event)
    await db.commit()

    # Push real-time notification via pg_notify (payload < 8 KB)
    try:
        payload = _json.dumps({
            "id": getattr(event, "id", None),
            "appointment_id": str(fields.get("appointment_id")),
            "stage": fields.get("stage"),
            "step_key": fields.get("step_key"),
            "status": fields.get("status"),
            "progress_percent": fields.get("progress_percent"),
        }, default=str)
        await db.execute(text("SELECT pg_notify('ai_progress_events', :p)"), {"p": payload})
        await db.commit()
    except Exception as notify_exc:
        # Non-fatal: the UI still picks the row up on its next poll
        logger.debug("[db] pg_notify failed (non-fatal): %s", notify_exc)
    return event


# ---------------------------------------------------------------------------
# Clinical summaries
# ---------------------------------------------------------------------------

async def create_summary_row(
    db: AsyncSession,
    *,
    consultation_id: str | UUID,
    patient_id: str | UUID,
    appointment_id: str | UUID | None,
    raw_output: str,
) -> UUID:
    """Insert a new ClinicalSummary holding the verbatim model output, status ``parsing``."""
    summary_id = uuid.uuid4()
    now = _utc_now_naive()
    db.add(ClinicalSummary(
        id=summary_id,
        consultation_id=as_uuid(consultation_id),
        patient_id=as_uuid(patient_id),
        appointment_id=as_uuid(appointment_id) if appointment_id else None,
        raw_output=raw_output,
        summary_json={},
        processing_status=SummaryStatus.PARSING.value,
        created_at=now,
        updated_at=now,
    ))
    await db.commit()
    return summary_id


async def finalize_summary(
    db: AsyncSession,
    summary_id: UUID,
    status: SummaryStatus,
    summary_json: dict | None = None,
) -> bool:
    """Move a summary row out of ``parsing`` exactly once."""
    values: dict[str, Any] = {"processing_status": status.value, "updated_at": _utc_now_naive()}
    if summary_json is not None:
        values["summary_json"] = summary_json
    stmt = (
        update(ClinicalSummary)
        .where(
            ClinicalSummary.id == summary_id,
            ClinicalSummary.processing_status == SummaryStatus.PARSING.value,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    await db.commit()
    return (result.rowcount or 0) > 0


async def get_latest_summary(db: AsyncSession, consultation_id: str | UUID) -> ClinicalSummary | None:
    """Most recent completed summary for a consultation (used when re-running)."""
    result = await db.execute(
        select(ClinicalSummary)
        .where(
            ClinicalSummary.consultation_id == as_uuid(consultation_id),
            ClinicalSummary.processing_status == SummaryStatus.COMPLETED.value,
        )
        .order_by(ClinicalSummary.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Commit / rollback helpers
# ---------------------------------------------------------------------------

async def safe_commit(db: AsyncSession) -> bool:
    """Commit, returning False (after rollback) on error."""
    try:
        await db.commit()
        return True
    except Exception as exc:
        logger.error("[db] commit failed: %s", exc, exc_info=True)
        await safe_rollback(db)
        return False


async def safe_rollback(db: AsyncSession) -> None:
    """Rollback, swallowing errors."""
    try:
        await db.rollback()
    except Exception as exc:
        logger.error("[db] rollback failed: %s", exc, exc_info=True)
