"""Tests for scheduler wiring and job run tracking."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from duprsync import scheduler as scheduler_module
from duprsync.jobs.tracking import get_last_success_at, record_job_run
from duprsync.models import utc_now
from tests.conftest import make_settings


class TestRunDuprJob:
    """A tick never lets an exception reach APScheduler."""

    @pytest.mark.asyncio
    async def test_exception_is_contained(self):
        runner = AsyncMock(side_effect=RuntimeError("boom"))
        record = AsyncMock()

        with patch.object(scheduler_module, "_record_run", record):
            result = await scheduler_module.run_dupr_job("dupr_process_queue", runner)

        assert result == {"status": "error", "error": "boom"}
        assert record.await_args.args[1] == "error"
        assert record.await_args.kwargs["error"] == "boom"

    @pytest.mark.asyncio
    async def test_token_unavailable_recorded_as_skipped(self):
        runner = AsyncMock(return_value={"status": "token_unavailable", "batches": 0})
        record = AsyncMock()

        with patch.object(scheduler_module, "_record_run", record):
            result = await scheduler_module.run_dupr_job("dupr_process_queue", runner)

        assert result["status"] == "token_unavailable"
        assert record.await_args.args[1] == "skipped"

    @pytest.mark.asyncio
    async def test_success(self):
        runner = AsyncMock(return_value={"status": "ok", "submitted": 2, "failed": 0})
        record = AsyncMock()

        with patch.object(scheduler_module, "_record_run", record):
            await scheduler_module.run_dupr_job("dupr_process_corrections", runner)

        assert record.await_args.args[:2] == ("dupr_process_corrections", "ok")
        assert record.await_args.kwargs["metrics"]["submitted"] == 2


class TestStartScheduler:
    def test_disabled(self, monkeypatch):
        fake = MagicMock()
        monkeypatch.setattr(scheduler_module, "scheduler", fake)
        monkeypatch.setattr(scheduler_module, "_scheduler_started", False)
        monkeypatch.delenv("UVICORN_RELOADED", raising=False)
        monkeypatch.setattr(scheduler_module, "get_settings", lambda: make_settings(SCHEDULER_ENABLED=False))

        scheduler_module.start_scheduler()

        fake.add_job.assert_not_called()
        fake.start.assert_not_called()

    def test_registers_jobs(self, monkeypatch):
        fake = MagicMock()
        monkeypatch.setattr(scheduler_module, "scheduler", fake)
        monkeypatch.setattr(scheduler_module, "_scheduler_started", False)
        monkeypatch.delenv("UVICORN_RELOADED", raising=False)
        monkeypatch.setattr(scheduler_module, "get_settings", lambda: make_settings(SCHEDULER_ENABLED=True))

        scheduler_module.start_scheduler()
        scheduler_module.start_scheduler()

        ids = [c.kwargs["id"] for c in fake.add_job.call_args_list]
        assert ids == ["dupr_process_queue", "dupr_process_corrections", "dupr_sync_ratings"]
        assert all(c.kwargs["max_instances"] == 1 for c in fake.add_job.call_args_list)
        fake.start.assert_called_once()

    def test_reload_subprocess_skips(self, monkeypatch):
        fake = MagicMock()
        monkeypatch.setattr(scheduler_module, "scheduler", fake)
        monkeypatch.setattr(scheduler_module, "_scheduler_started", False)
        monkeypatch.setenv("UVICORN_RELOADED", "1")

        scheduler_module.start_scheduler()

        fake.add_job.assert_not_called()


class TestJobTracking:
    @pytest.mark.asyncio
    async def test_last_success(self, session):
        assert await get_last_success_at(session, "dupr_sync_ratings") is None

        started = utc_now() - timedelta(seconds=5)
        await record_job_run(session, "dupr_sync_ratings", "ok", started, metrics={"updated": 3})
        await record_job_run(session, "dupr_sync_ratings", "error", utc_now(), error="boom")

        last = await get_last_success_at(session, "dupr_sync_ratings")
        assert last is not None
        assert last >= started
