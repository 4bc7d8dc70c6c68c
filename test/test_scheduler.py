"""Tests for the cron job scheduler wrapper."""

import asyncio
import logging

import pytest

from vanbeaches.scheduler import JobStatus, Scheduler


async def _noop():
    return None


class TestScheduleJob:
    def test_registers_without_starting(self):
        scheduler = Scheduler()
        job = scheduler.schedule_job("weather-refresh", "*/30 * * * *", _noop)
        assert job.status == JobStatus.registered
        assert scheduler.get_job("weather-refresh") is job
        assert not scheduler.running

    def test_duplicate_name_rejected(self):
        scheduler = Scheduler()
        scheduler.schedule_job("job", "0 * * * *", _noop)
        with pytest.raises(ValueError, match="already registered"):
            scheduler.schedule_job("job", "0 * * * *", _noop)

    def test_invalid_cron_rejected(self):
        scheduler = Scheduler()
        with pytest.raises(ValueError):
            scheduler.schedule_job("job", "every half hour", _noop)
        assert scheduler.jobs == []


class TestRunJob:
    @pytest.mark.asyncio
    async def test_successful_run(self):
        calls = []

        async def handler():
            calls.append(1)

        scheduler = Scheduler()
        job = scheduler.schedule_job("job", "0 * * * *", handler)
        result = await scheduler.run_job("job")

        assert result == JobStatus.succeeded
        assert calls == [1]
        assert job.status == JobStatus.idle
        assert job.last_result == JobStatus.succeeded
        assert job.runs == 1
        assert job.last_started is not None
        assert job.last_finished >= job.last_started

    @pytest.mark.asyncio
    async def test_failing_run_is_logged_and_swallowed(self, caplog):
        async def handler():
            raise RuntimeError("upstream exploded")

        scheduler = Scheduler()
        job = scheduler.schedule_job("job", "0 * * * *", handler)
        with caplog.at_level(logging.INFO, logger="vanbeaches.scheduler"):
            result = await scheduler.run_job("job")

        assert result == JobStatus.failed
        assert job.failures == 1
        assert job.last_error == "upstream exploded"
        assert job.status == JobStatus.idle
        assert "Running job: job" in caplog.text
        assert "Failed: job" in caplog.text

    @pytest.mark.asyncio
    async def test_failure_does_not_block_next_run(self):
        attempts = 0

        async def handler():
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise RuntimeError("first run fails")

        scheduler = Scheduler()
        job = scheduler.schedule_job("job", "0 * * * *", handler)
        assert await scheduler.run_job("job") == JobStatus.failed
        assert await scheduler.run_job("job") == JobStatus.succeeded
        assert job.runs == 2
        assert job.failures == 1
        assert job.last_error is None

    @pytest.mark.asyncio
    async def test_status_snapshot(self):
        scheduler = Scheduler()
        scheduler.schedule_job("job", "0 * * * *", _noop)
        await scheduler.run_job("job")
        [snapshot] = scheduler.status()
        assert snapshot["name"] == "job"
        assert snapshot["cron"] == "0 * * * *"
        assert snapshot["status"] == "idle"
        assert snapshot["last_result"] == "succeeded"


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, caplog):
        scheduler = Scheduler()
        scheduler.schedule_job("a", "*/30 * * * *", _noop)
        scheduler.schedule_job("b", "0 */6 * * *", _noop)

        with caplog.at_level(logging.INFO, logger="vanbeaches.scheduler"):
            scheduler.start()
            assert scheduler.running
            assert all(job.status == JobStatus.idle for job in scheduler.jobs)
            scheduler.stop()

        assert not scheduler.running
        assert "Started 2 jobs" in caplog.text
        assert "Stopped all jobs" in caplog.text

    @pytest.mark.asyncio
    async def test_restart_after_stop(self):
        scheduler = Scheduler()
        scheduler.schedule_job("a", "*/30 * * * *", _noop)
        scheduler.start()
        scheduler.stop()
        scheduler.start()
        assert scheduler.running
        scheduler.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_running_job(self):
        started = asyncio.Event()

        async def slow():
            started.set()
            await asyncio.sleep(60)

        scheduler = Scheduler()
        job = scheduler.schedule_job("slow", "0 * * * *", slow)
        run = asyncio.create_task(scheduler.run_job("slow"))
        await started.wait()
        assert job.status == JobStatus.running

        scheduler.stop()
        with pytest.raises(asyncio.CancelledError):
            await run
        assert job.status == JobStatus.idle
        assert job.last_error == "cancelled"
