"""Unit tests for previsit.worker.summary: stage flow with mocked lease, DB, and AI."""
from __future__ import annotations

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, call, patch
from uuid import uuid4

import pytest

from previsit.worker.config import WorkerConfig
from previsit.worker.context_builder import ClinicalContext, DocumentText
from previsit.worker.errors import AIServiceError
from previsit.worker.status import ProcessingStatus, SummaryStatus

_SUMMARY = {
    "short_clinical_synopsis": "61F, 3 weeks of exertional dyspnoea.",
    "urgency": "Urgent",
    "chief_complaint": "Shortness of breath",
}


def _appointment():
    return SimpleNamespace(
        id=uuid4(), consultation_id=uuid4(), patient_id=uuid4(), doctor_id=uuid4(),
        ai_processing_status="files_processed",
    )


def _lease(acquired=True):
    lease = MagicMock()
    lease.acquire = AsyncMock(return_value=acquired)
    lease.release = AsyncMock(return_value=True)
    lease.instance_id = "instance_test"
    return lease


def _context(sufficient=True):
    ctx = ClinicalContext(consultation_id="c", patient_id=str(uuid4()), doctor_id=None)
    if sufficient:
        ctx.documents = [DocumentText(file_name="cxr.pdf", file_type="application/pdf", text="Clear lungs")]
    return ctx


class _Harness:
    """Patches the summary stage's collaborators; exposes the mocks."""

    def __init__(self, *, appointment=None, acquired=True, context=None, ai_text=None, ai_error=None):
        self.appointment = appointment if appointment is not None else _appointment()
        self.lease = _lease(acquired)
        self.context = context or _context()
        self.ai = MagicMock()
        if ai_error is not None:
            self.ai.generate = AsyncMock(side_effect=ai_error)
        else:
            self.ai.generate = AsyncMock(return_value=ai_text or json.dumps(_SUMMARY))
        self.summary_id = uuid4()
        self.order: list[str] = []
        self._patches = []

    def __enter__(self):
        from previsit.worker import summary

        self.db_mock = MagicMock()
        self.db_mock.get_appointment = AsyncMock(return_value=self.appointment)
        self.db_mock.create_summary_row = AsyncMock(
            side_effect=lambda *a, **kw: self.order.append("create") or self.summary_id
        )
        self.db_mock.finalize_summary = AsyncMock(return_value=True)
        self.db_mock.safe_rollback = AsyncMock()
        real_parse = summary.parse_summary_response

        def _parse(raw):
            self.order.append("parse")
            return real_parse(raw)

        self._patches = [
            patch.object(summary, "db_handler", self.db_mock),
            patch.object(summary, "ProcessingLease", return_value=self.lease),
            patch.object(summary, "build_clinical_context", AsyncMock(return_value=self.context)),
            patch.object(summary, "parse_summary_response", side_effect=_parse),
            patch("previsit.worker.context.emit_progress", new_callable=AsyncMock, return_value=True),
            patch("previsit.worker.summary.asyncio.sleep", new_callable=AsyncMock),
        ]
        mocks = [p.start() for p in self._patches]
        self.lease_cls = mocks[1]
        self.emit = mocks[4]
        self.sleep = mocks[5]
        return self

    def __exit__(self, *exc):
        for p in reversed(self._patches):
            p.stop()
        return False

    def step_keys(self):
        return [(c[0][4], c[0][5]) for c in self.emit.call_args_list]


async def _run(h: _Harness, cfg: WorkerConfig | None = None):
    from previsit.worker.summary import run_summary_stage

    return await run_summary_stage(str(h.appointment.id), db=AsyncMock(), ai=h.ai, cfg=cfg or WorkerConfig())


# ---------------------------------------------------------------------------
# Stage flow
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_summary_success_publishes_and_completes():
    with _Harness() as h:
        resp = await _run(h)

    assert resp.status_code == 200
    assert resp.body["success"] is True
    assert resp.body["summary_id"] == str(h.summary_id)
    assert h.order == ["create", "parse"]
    status_arg, json_arg = h.db_mock.finalize_summary.call_args[0][2:4]
    assert status_arg is SummaryStatus.COMPLETED
    assert json_arg["urgency"] == "urgent"
    assert json_arg["current_symptoms"] == []
    h.lease.release.assert_awaited_once_with(ProcessingStatus.COMPLETED)
    assert [k for k, _ in h.step_keys()] == [
        "init", "collect_data", "synthesize_documents", "build_prompt",
        "reasoning_start", "reasoning_complete", "publish",
    ]


@pytest.mark.asyncio
async def test_summary_raw_output_kept_when_parse_fails():
    with _Harness(ai_text="I am unable to produce JSON today.") as h:
        resp = await _run(h)

    assert resp.status_code == 500
    assert resp.body["error_code"] == "parse_error"
    assert h.order == ["create", "parse"]
    assert h.db_mock.create_summary_row.call_args[1]["raw_output"] == "I am unable to produce JSON today."
    h.db_mock.finalize_summary.assert_awaited_once_with(
        h.db_mock.finalize_summary.call_args[0][0], h.summary_id, SummaryStatus.FAILED,
    )
    assert h.lease.release.call_args[0][0] is ProcessingStatus.FAILED
    assert ("reasoning", "error") in h.step_keys()


@pytest.mark.asyncio
async def test_insufficient_data_never_calls_ai():
    with _Harness(context=_context(sufficient=False)) as h:
        resp = await _run(h)

    assert resp.status_code == 500
    assert resp.body["error"] == "Insufficient data for clinical summary generation"
    assert resp.body["error_code"] == "insufficient_data"
    h.ai.generate.assert_not_awaited()
    h.db_mock.create_summary_row.assert_not_awaited()
    h.lease.release.assert_awaited_once_with(
        ProcessingStatus.FAILED, error_message="Insufficient data for clinical summary generation",
    )


@pytest.mark.asyncio
async def test_ai_exhaustion_fails_without_summary_row():
    with _Harness(ai_error=AIServiceError("Gemini API error: 503")) as h:
        resp = await _run(h)

    assert resp.status_code == 500
    assert resp.body["error_code"] == "ai_failure"
    assert h.ai.generate.await_count == 3
    h.db_mock.create_summary_row.assert_not_awaited()
    h.db_mock.finalize_summary.assert_not_awaited()


@pytest.mark.asyncio
async def test_lease_not_acquired_is_conflict_noop():
    with _Harness(acquired=False) as h:
        resp = await _run(h)

    assert resp.status_code == 409
    assert resp.body["success"] is True
    assert resp.body["concurrent_processing"] is True
    h.ai.generate.assert_not_awaited()
    h.lease.release.assert_not_awaited()


@pytest.mark.asyncio
async def test_missing_appointment_is_404():
    with _Harness() as h:
        h.db_mock.get_appointment = AsyncMock(return_value=None)
        resp = await _run(h)
    assert resp.status_code == 404
    h.lease.acquire.assert_not_awaited()


@pytest.mark.asyncio
async def test_error_message_truncated():
    with _Harness(ai_error=AIServiceError("x" * 2000)) as h:
        resp = await _run(h, WorkerConfig(error_message_max_chars=100))
    assert len(resp.body["error"]) == 100
    assert len(h.lease.release.call_args[1]["error_message"]) == 100


# ---------------------------------------------------------------------------
# call_with_retry
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_retry_backoff_then_final_pause():
    from previsit.worker.summary import call_with_retry

    gen = AsyncMock(side_effect=[RuntimeError("503"), RuntimeError("503"), "ok"])
    with patch("previsit.worker.summary.asyncio.sleep", new_callable=AsyncMock) as sleep:
        assert await call_with_retry(gen, "prompt", WorkerConfig()) == "ok"
    assert sleep.await_args_list == [call(1.0), call(60.0)]


@pytest.mark.asyncio
async def test_retry_exhaustion_raises_ai_service_error():
    from previsit.worker.summary import call_with_retry

    gen = AsyncMock(side_effect=RuntimeError("quota"))
    with patch("previsit.worker.summary.asyncio.sleep", new_callable=AsyncMock):
        with pytest.raises(AIServiceError, match="quota"):
            await call_with_retry(gen, "prompt", WorkerConfig())
    assert gen.await_count == 3


@pytest.mark.asyncio
async def test_retry_linear_backoff_with_more_attempts():
    from previsit.worker.summary import call_with_retry

    gen = AsyncMock(side_effect=RuntimeError("503"))
    cfg = WorkerConfig(ai_max_attempts=4, ai_backoff_seconds=2.0, ai_final_pause_seconds=30.0)
    with patch("previsit.worker.summary.asyncio.sleep", new_callable=AsyncMock) as sleep:
        with pytest.raises(AIServiceError):
            await call_with_retry(gen, "prompt", cfg)
    assert sleep.await_args_list == [call(2.0), call(4.0), call(30.0)]


@pytest.mark.asyncio
async def test_single_attempt_no_sleep():
    from previsit.worker.summary import call_with_retry

    gen = AsyncMock(side_effect=AIServiceError("down"))
    with patch("previsit.worker.summary.asyncio.sleep", new_callable=AsyncMock) as sleep:
        with pytest.raises(AIServiceError):
            await call_with_retry(gen, "prompt", WorkerConfig(ai_max_attempts=1))
    sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_summary_lease_uses_its_own_timeout():
    with _Harness() as h:
        await _run(h, WorkerConfig(lease_timeout_minutes=5, summary_lease_timeout_minutes=25))

    kw = h.lease_cls.call_args[1]
    assert kw["stage"] == "summary"
    assert kw["timeout_minutes"] == 25
