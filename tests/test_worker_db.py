"""Unit tests for previsit.worker.db: all DB functions tested with mocked AsyncSession."""
from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from sqlalchemy.dialects import postgresql

from previsit.worker.status import SummaryStatus


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _mock_db(
    *,
    scalar_one_or_none=None,
    scalars_all=None,
    rowcount=1,
    execute_side_effect=None,
):
    """Build a mock AsyncSession with common patterns."""
    db = AsyncMock()
    db.add = MagicMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()

    if execute_side_effect is not None:
        db.execute = AsyncMock(side_effect=execute_side_effect)
    else:
        result_mock = MagicMock()
        result_mock.scalar_one_or_none.return_value = scalar_one_or_none
        result_mock.scalars.return_value.all.return_value = scalars_all or []
        result_mock.rowcount = rowcount
        db.execute = AsyncMock(return_value=result_mock)

    return db


def _count_result(n):
    r = MagicMock()
    r.scalar_one.return_value = n
    return r


def _sql(db, call=0):
    return str(db.execute.call_args_list[call][0][0].compile(dialect=postgresql.dialect()))


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_get_unprocessed_files_filters_null_or_false():
    from previsit.worker.db import get_unprocessed_files

    files = [SimpleNamespace(id=uuid4())]
    db = _mock_db(scalars_all=files)
    assert await get_unprocessed_files(db, str(uuid4())) == files
    sql = _sql(db)
    assert "patient_files.processed IS NULL" in sql
    assert "patient_files.processed IS false" in sql
    assert "ORDER BY patient_files.created_at" in sql


@pytest.mark.asyncio
async def test_mark_file_processed_only_touches_unprocessed_rows():
    from previsit.worker.db import mark_file_processed

    db = _mock_db(rowcount=1)
    assert await mark_file_processed(db, uuid4(), parsed_text="text") is True
    sql = _sql(db)
    assert sql.startswith("UPDATE patient_files SET")
    assert "patient_files.processed IS NULL" in sql
    db.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_mark_file_processed_already_terminal():
    from previsit.worker.db import mark_file_processed

    db = _mock_db(rowcount=0)
    assert await mark_file_processed(db, uuid4(), parsed_text="", error="other: x") is False


# ---------------------------------------------------------------------------
# Completion gate
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("total,done,expected", [
    (0, 0, True),
    (3, 3, True),
    (3, 2, False),
])
async def test_all_files_processed(total, done, expected):
    from previsit.worker.db import all_files_processed

    db = _mock_db(execute_side_effect=[_count_result(total), _count_result(done)])
    assert await all_files_processed(db, str(uuid4())) is expected


@pytest.mark.asyncio
async def test_all_files_processed_false_on_db_error():
    from previsit.worker.db import all_files_processed

    db = _mock_db(execute_side_effect=RuntimeError("db down"))
    assert await all_files_processed(db, str(uuid4())) is False
    db.rollback.assert_awaited()


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_summary_row_persists_raw_output_as_parsing():
    from previsit.worker.db import create_summary_row

    db = _mock_db()
    summary_id = await create_summary_row(
        db, consultation_id=uuid4(), patient_id=uuid4(), appointment_id=str(uuid4()), raw_output="{raw}",
    )
    row = db.add.call_args[0][0]
    assert row.id == summary_id
    assert row.raw_output == "{raw}"
    assert row.summary_json == {}
    assert row.processing_status == "parsing"
    db.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_finalize_summary_only_moves_parsing_rows():
    from previsit.worker.db import finalize_summary

    db = _mock_db(rowcount=1)
    assert await finalize_summary(db, uuid4(), SummaryStatus.COMPLETED, {"a": 1}) is True
    sql = _sql(db)
    assert "clinical_summaries.processing_status = " in sql


@pytest.mark.asyncio
async def test_get_profile_none_id_skips_query():
    from previsit.worker.db import get_profile

    db = _mock_db()
    assert await get_profile(db, None) is None
    db.execute.assert_not_awaited()


# ---------------------------------------------------------------------------
# Progress events
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_insert_progress_event_adds_and_commits():
    from previsit.worker.db import insert_progress_event

    db = _mock_db()
    event = await insert_progress_event(
        db, appointment_id=uuid4(), stage="files", step_index=1, step_key="init",
        status="completed", message="m", progress_percent=10, meta=None,
    )
    db.add.assert_called_once_with(event)
    assert db.commit.await_count >= 1


@pytest.mark.asyncio
async def test_insert_progress_event_notify_failure_is_non_fatal():
    from previsit.worker.db import insert_progress_event

    db = _mock_db(execute_side_effect=RuntimeError("no pg_notify"))
    await insert_progress_event(db, appointment_id=uuid4(), stage="files", step_index=1,
                                step_key="init", status="completed", message="m", progress_percent=10)
    db.commit.assert_awaited()


# ---------------------------------------------------------------------------
# safe_commit / safe_rollback
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_safe_commit_rolls_back_on_error():
    from previsit.worker.db import safe_commit

    db = _mock_db()
    db.commit = AsyncMock(side_effect=RuntimeError("fail"))
    assert await safe_commit(db) is False
    db.rollback.assert_awaited_once()


@pytest.mark.asyncio
async def test_safe_rollback_swallows_errors():
    from previsit.worker.db import safe_rollback

    db = _mock_db()
    db.rollback = AsyncMock(side_effect=RuntimeError("fail"))
    await safe_rollback(db)
