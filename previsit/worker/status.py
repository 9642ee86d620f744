"""
Appointment processing state machine.

``appointments.ai_processing_status`` is the shared substrate every stage reads
and transitions.  The conditional UPDATEs in ``worker.db`` take their source
sets from :func:`claimable_from` and :func:`release_sources`, both derived from
``ALLOWED_TRANSITIONS``; an illegal target raises IllegalTransitionError before
any SQL runs.

    pending ──┐
              ├─> processing ─> files_processed ─> summarizing ─> completed
    triggered ┘        │                               │
                       └──────────> failed <───────────┘

``triggered`` is written by the UI to request a re-run; ``completed`` and
``failed`` only leave through it.
"""
from __future__ import annotations

from enum import Enum

from previsit.worker.errors import IllegalTransitionError


class ProcessingStatus(str, Enum):
    PENDING = "pending"
    TRIGGERED = "triggered"
    PROCESSING = "processing"
    FILES_PROCESSED = "files_processed"
    SUMMARIZING = "summarizing"
    COMPLETED = "completed"
    FAILED = "failed"


class SummaryStatus(str, Enum):
    PARSING = "parsing"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[ProcessingStatus, frozenset[ProcessingStatus]] = {
    ProcessingStatus.PENDING: frozenset({ProcessingStatus.PROCESSING, ProcessingStatus.TRIGGERED}),
    ProcessingStatus.TRIGGERED: frozenset({ProcessingStatus.PROCESSING}),
    ProcessingStatus.PROCESSING: frozenset({
        ProcessingStatus.PROCESSING,  # stale lease reclaim
        ProcessingStatus.FILES_PROCESSED,
        ProcessingStatus.FAILED,
    }),
    ProcessingStatus.FILES_PROCESSED: frozenset({ProcessingStatus.SUMMARIZING, ProcessingStatus.TRIGGERED}),
    ProcessingStatus.SUMMARIZING: frozenset({
        ProcessingStatus.SUMMARIZING,  # stale lease reclaim
        ProcessingStatus.COMPLETED,
        ProcessingStatus.FAILED,
    }),
    ProcessingStatus.COMPLETED: frozenset({ProcessingStatus.TRIGGERED}),
    ProcessingStatus.FAILED: frozenset({ProcessingStatus.TRIGGERED}),
}

TERMINAL_STATUSES = frozenset({ProcessingStatus.COMPLETED, ProcessingStatus.FAILED})

# Status held while a stage owns the lease.
STAGE_LEASE_STATUS = {
    "files": ProcessingStatus.PROCESSING,
    "summary": ProcessingStatus.SUMMARIZING,
}


def coerce_status(value: str | ProcessingStatus) -> ProcessingStatus:
    """Parse a raw column value; unknown strings raise IllegalTransitionError."""
    if isinstance(value, ProcessingStatus):
        return value
    try:
        return ProcessingStatus(str(value).strip().lower())
    except ValueError:
        raise IllegalTransitionError(f"Unknown processing status: {value!r}") from None


def validate_transition(
    current: str | ProcessingStatus,
    target: str | ProcessingStatus,
) -> ProcessingStatus:
    """Return the target status, or raise if ``current -> target`` is not allowed."""
    cur = coerce_status(current)
    tgt = coerce_status(target)
    if tgt not in ALLOWED_TRANSITIONS.get(cur, frozenset()):
        raise IllegalTransitionError(f"Illegal status transition {cur.value} -> {tgt.value}")
    return tgt


def sources_for(target: str | ProcessingStatus) -> frozenset[ProcessingStatus]:
    """All statuses from which *target* may be entered."""
    tgt = coerce_status(target)
    return frozenset(src for src, targets in ALLOWED_TRANSITIONS.items() if tgt in targets)


def claimable_from(lease_status: str | ProcessingStatus) -> frozenset[ProcessingStatus]:
    """Statuses a stage may claim *lease_status* from, excluding the stale-lease self-loop."""
    lease = coerce_status(lease_status)
    if lease not in STAGE_LEASE_STATUS.values():
        raise IllegalTransitionError(f"{lease.value} is not a lease status")
    return sources_for(lease) - {lease}


def release_sources(target: str | ProcessingStatus) -> frozenset[ProcessingStatus]:
    """Lease statuses that may be released into *target*.

    Raises IllegalTransitionError when no held lease may move to *target*
    (e.g. releasing back to ``pending``).
    """
    tgt = coerce_status(target)
    sources = frozenset(
        lease for lease in STAGE_LEASE_STATUS.values()
        if lease is not tgt and tgt in ALLOWED_TRANSITIONS[lease]
    )
    if not sources:
        raise IllegalTransitionError(f"Illegal lease release to {tgt.value}")
    return sources


LOCKABLE_FOR_FILES = claimable_from(ProcessingStatus.PROCESSING)
LOCKABLE_FOR_SUMMARY = claimable_from(ProcessingStatus.SUMMARIZING)
