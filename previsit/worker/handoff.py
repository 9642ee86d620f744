"""
File stage -> summary stage hand-off.

``SummaryHandoff`` calls the summary endpoint over HTTP (the deployed shape:
two separately invoked functions).  ``InProcessHandoff`` runs the summary
stage directly in a fresh session.  Neither ever raises: the file stage has
already released its lease when it hands off, so a failed hand-off only
leaves the appointment in ``files_processed`` for a later retry.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Callable

from previsit.config import INTERNAL_SERVICE_TOKEN, SUMMARY_FUNCTION_URL

logger = logging.getLogger(__name__)

TRIGGERED_BY_FILES = "file_processing_complete"


@dataclass
class HandoffOutcome:
    ok: bool
    status_code: int | None = None
    detail: str = ""


def new_request_id() -> str:
    return f"clinical_summary_{int(time.time() * 1000)}"


def handoff_payload(appointment_id: str, request_id: str | None = None) -> dict[str, Any]:
    return {
        "appointment_id": appointment_id,
        "request_id": request_id or new_request_id(),
        "triggered_by": TRIGGERED_BY_FILES,
    }


def _post_json(url: str, payload: dict, token: str, timeout: float) -> tuple[int, str]:
    headers = {"Content-Type": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    req = urllib.request.Request(
        url, data=json.dumps(payload).encode("utf-8"), headers=headers, method="POST",
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return resp.status, resp.read().decode("utf-8", errors="replace")
    except urllib.error.HTTPError as e:
        try:
            body = e.read().decode("utf-8", errors="replace")
        except Exception:
            body = ""
        return e.code, body


class SummaryHandoff:
    """POST ``{appointment_id, request_id, triggered_by}`` to the summary endpoint."""

    def __init__(
        self,
        url: str = SUMMARY_FUNCTION_URL,
        token: str = INTERNAL_SERVICE_TOKEN,
        timeout: float = 30.0,
    ):
        self.url = url
        self.token = token
        self.timeout = timeout

    async def dispatch(self, appointment_id: str, request_id: str | None = None) -> HandoffOutcome:
        payload = handoff_payload(appointment_id, request_id)
        try:
            status, body = await asyncio.to_thread(_post_json, self.url, payload, self.token, self.timeout)
        except Exception as exc:
            logger.warning("[%s] Failed to trigger clinical summary: %s", appointment_id, exc)
            return HandoffOutcome(ok=False, detail=str(exc)[:500])

        if 200 <= status < 300:
            logger.info("[%s] Clinical summary generation triggered successfully", appointment_id)
            return HandoffOutcome(ok=True, status_code=status, detail=body[:500])
        if status == 409:
            logger.info("[%s] Summary already in progress elsewhere; hand-off treated as accepted", appointment_id)
            return HandoffOutcome(ok=True, status_code=status, detail=body[:500])
        logger.warning("[%s] Failed to trigger clinical summary: %s %s", appointment_id, status, body[:500])
        return HandoffOutcome(ok=False, status_code=status, detail=body[:500])


class InProcessHandoff:
    """Run the summary stage in this process with its own session.

    *session_factory* is an ``async_sessionmaker`` (or any callable returning an
    async context manager yielding a session); *ai_factory* builds the
    provider for the run.
    """

    def __init__(self, session_factory: Callable[[], Any], ai_factory: Callable[[], Any], cfg):
        self.session_factory = session_factory
        self.ai_factory = ai_factory
        self.cfg = cfg

    async def dispatch(self, appointment_id: str, request_id: str | None = None) -> HandoffOutcome:
        from previsit.worker.summary import run_summary_stage

        try:
            async with self.session_factory() as db:
                response = await run_summary_stage(
                    appointment_id,
                    db=db,
                    ai=self.ai_factory(),
                    cfg=self.cfg,
                    request_id=request_id or new_request_id(),
                )
        except Exception as exc:
            logger.warning("[%s] In-process summary stage raised: %s", appointment_id, exc, exc_info=True)
            return HandoffOutcome(ok=False, detail=str(exc)[:500])
        ok = response.ok or response.status_code == 409
        return HandoffOutcome(ok=ok, status_code=response.status_code, detail=str(response.body)[:500])
