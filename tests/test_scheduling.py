"""Tests for cancellable scheduled tasks."""

import asyncio
from unittest.mock import MagicMock

import pytest

from hooklearn.learning.scheduling import Scheduler, has_running_loop, log_task_exception


class TestScheduler:
    """Tests for Scheduler."""

    @pytest.mark.asyncio
    async def test_call_later_runs_once(self) -> None:
        scheduler = Scheduler()
        calls: list[str] = []
        handle = scheduler.call_later(0.01, lambda: calls.append("x"), name="once")
        await handle.wait()
        assert calls == ["x"]
        assert handle.done
        assert scheduler.active_count == 0

    @pytest.mark.asyncio
    async def test_call_later_accepts_coroutines(self) -> None:
        scheduler = Scheduler()
        calls: list[str] = []

        async def callback() -> None:
            calls.append("async")

        await scheduler.call_later(0, callback, name="async").wait()
        assert calls == ["async"]

    @pytest.mark.asyncio
    async def test_cancelled_task_never_runs(self) -> None:
        scheduler = Scheduler()
        calls: list[str] = []
        handle = scheduler.call_later(10, lambda: calls.append("x"), name="cancel")
        assert handle.cancel() is True
        await handle.wait()
        assert handle.cancelled
        assert calls == []
        assert handle.cancel() is False

    @pytest.mark.asyncio
    async def test_call_every_survives_callback_errors(self) -> None:
        scheduler = Scheduler()
        calls: list[int] = []

        def callback() -> None:
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")

        handle = scheduler.call_every(0.01, callback, name="periodic")
        for _ in range(100):
            if len(calls) >= 3:
                break
            await asyncio.sleep(0.01)
        handle.cancel()
        await handle.wait()
        assert len(calls) >= 3

    @pytest.mark.asyncio
    async def test_call_every_stops_after_lifetime(self) -> None:
        scheduler = Scheduler()
        handle = scheduler.call_every(0.01, lambda: None, name="bounded", stop_after=0.02)
        await asyncio.wait_for(handle.wait(), timeout=2)
        assert handle.done
        assert not handle.cancelled

    @pytest.mark.asyncio
    async def test_shutdown_cancels_everything(self) -> None:
        scheduler = Scheduler()
        scheduler.call_later(10, lambda: None, name="a")
        scheduler.call_every(10, lambda: None, name="b")
        assert scheduler.active_count == 2
        await scheduler.shutdown()
        assert scheduler.active_count == 0

    @pytest.mark.asyncio
    async def test_cancel_all_counts_pending_tasks(self) -> None:
        scheduler = Scheduler()
        finished = scheduler.call_later(0, lambda: None, name="finished")
        await finished.wait()
        pending = [
            scheduler.call_later(10, lambda: None, name="a"),
            scheduler.call_every(10, lambda: None, name="b"),
        ]
        assert scheduler.cancel_all() == 2
        for handle in pending:
            await handle.wait()
            assert handle.cancelled
        assert scheduler.cancel_all() == 0

    def test_requires_running_loop(self) -> None:
        assert has_running_loop() is False
        with pytest.raises(RuntimeError):
            Scheduler().call_later(1, lambda: None, name="no-loop")


class TestLogTaskException:
    """Tests for log_task_exception."""

    @pytest.mark.asyncio
    async def test_logs_failed_task(self) -> None:
        async def fail() -> None:
            raise ValueError("bad")

        task = asyncio.create_task(fail(), name="failing")
        await asyncio.gather(task, return_exceptions=True)
        logger = MagicMock()

        exc = log_task_exception(task, logger, "task_failed")

        assert isinstance(exc, ValueError)
        logger.error.assert_called_once_with("task_failed", error="bad", task_name="failing")

    @pytest.mark.asyncio
    async def test_cancelled_task_returns_none(self) -> None:
        task = asyncio.create_task(asyncio.sleep(10))
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        assert log_task_exception(task, MagicMock(), "task_failed") is None
