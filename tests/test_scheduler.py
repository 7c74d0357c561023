"""
Tests for job scheduling: next-run computation, overlap protection, the
job registry and the cron CLI.
"""

import asyncio
import json
import threading
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from keyledger.core.clock import utcnow
from keyledger.core.errors import UnknownJob
from keyledger.jobs.scheduler import JOBS, JobScheduler, Schedule, default_schedules, run_job
from keyledger.models.outcomes import JOB_FAILED, JobResult
from keyledger.scripts import run_job as run_job_cli


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def _result(name="noop", status="completed"):
    return JobResult(job_name=name, run_id="r1", started_at=utcnow(), status=status, finished_at=utcnow())


class TestSchedule:
    def test_later_today(self):
        assert Schedule(hour=6).next_run_after(_utc(2026, 3, 4, 5, 30)) == _utc(2026, 3, 4, 6, 0)

    def test_rolls_to_tomorrow(self):
        assert Schedule(hour=6).next_run_after(_utc(2026, 3, 4, 6, 0)) == _utc(2026, 3, 5, 6, 0)

    def test_midnight(self):
        assert Schedule(hour=0).next_run_after(_utc(2026, 3, 4, 23, 59)) == _utc(2026, 3, 5, 0, 0)

    def test_weekly_on_monday(self):
        # 2026-03-04 is a Wednesday
        assert Schedule(hour=8, weekday=0).next_run_after(_utc(2026, 3, 4, 12, 0)) == _utc(2026, 3, 9, 8, 0)

    def test_weekly_same_day_before_hour(self):
        assert Schedule(hour=8, weekday=0).next_run_after(_utc(2026, 3, 9, 7, 0)) == _utc(2026, 3, 9, 8, 0)

    def test_weekly_same_day_after_hour(self):
        assert Schedule(hour=8, weekday=0).next_run_after(_utc(2026, 3, 9, 9, 0)) == _utc(2026, 3, 16, 8, 0)

    def test_naive_input_treated_as_utc(self):
        assert Schedule(hour=6).next_run_after(datetime(2026, 3, 4, 5, 0)) == _utc(2026, 3, 4, 6, 0)

    def test_default_schedules_cover_every_job(self):
        schedules = default_schedules()

        assert set(schedules) == set(JOBS)
        assert schedules["quota_reset"] == Schedule(hour=0)
        assert schedules["weekly_report"] == Schedule(hour=8, weekday=0)


class TestRunJob:
    def test_unknown_job(self):
        with pytest.raises(UnknownJob) as exc_info:
            run_job("vacuum")

        assert exc_info.value.code == "KL-JOB-001"

    def test_registered_job_runs(self):
        result = run_job("quota_reset")

        assert result.job_name == "quota_reset"
        assert result.status == "completed"


class TestJobScheduler:
    @pytest.mark.asyncio
    async def test_trigger_runs_job(self):
        scheduler = JobScheduler(schedules={}, jobs={"noop": _result})

        result = await scheduler.trigger("noop")

        assert result.job_name == "noop"
        assert scheduler.is_running("noop") is False

    @pytest.mark.asyncio
    async def test_overlapping_trigger_is_skipped(self):
        release = threading.Event()
        started = threading.Event()

        def slow():
            started.set()
            release.wait(timeout=5)
            return _result("slow")

        scheduler = JobScheduler(schedules={}, jobs={"slow": slow})
        first = asyncio.create_task(scheduler.trigger("slow"))
        while not started.is_set():
            await asyncio.sleep(0.01)

        assert scheduler.is_running("slow") is True
        assert await scheduler.trigger("slow") is None

        release.set()
        assert (await first).job_name == "slow"
        assert scheduler.is_running("slow") is False

    @pytest.mark.asyncio
    async def test_trigger_unknown_job(self):
        scheduler = JobScheduler(schedules={}, jobs={})

        with pytest.raises(UnknownJob):
            await scheduler.trigger("vacuum")

    @pytest.mark.asyncio
    async def test_loop_fires_due_job_and_stops(self):
        fired = threading.Event()

        def job():
            fired.set()
            return _result()

        # 10 ms before the scheduled hour
        now = _utc(2026, 3, 4, 5, 59, 59, 990000)
        scheduler = JobScheduler(
            schedules={"noop": Schedule(hour=6)},
            jobs={"noop": job},
            clock=lambda: now,
        )
        scheduler.start()
        for _ in range(200):
            if fired.is_set():
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()

        assert fired.is_set()
        assert scheduler._tasks == []

    def test_start_rejects_unknown_schedule(self):
        scheduler = JobScheduler(schedules={"vacuum": Schedule(hour=1)}, jobs={})

        with pytest.raises(UnknownJob):
            scheduler.start()


class TestRunJobCli:
    def test_prints_summary(self, capsys):
        with patch.object(run_job_cli, "setup_logging"), patch.object(
            run_job_cli, "run_job", return_value=_result("quota_reset")
        ) as run:
            code = run_job_cli.main(["quota_reset"])

        assert code == 0
        run.assert_called_once_with("quota_reset")
        assert "quota_reset: completed" in capsys.readouterr().out

    def test_json_output(self, capsys):
        with patch.object(run_job_cli, "setup_logging"), patch.object(
            run_job_cli, "run_job", return_value=_result("weekly_report")
        ):
            run_job_cli.main(["weekly_report", "--json"])

        assert json.loads(capsys.readouterr().out)["job_name"] == "weekly_report"

    def test_failed_job_exit_code(self):
        with patch.object(run_job_cli, "setup_logging"), patch.object(
            run_job_cli, "run_job", return_value=_result("credential_rotation", status=JOB_FAILED)
        ):
            assert run_job_cli.main(["credential_rotation"]) == 1

    def test_rejects_unknown_job(self):
        with pytest.raises(SystemExit):
            run_job_cli.main(["vacuum"])
