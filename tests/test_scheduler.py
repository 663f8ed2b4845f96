"""
Scheduler wiring tests
"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from bizpulse.scheduler import _job, setup_scheduler
from bizpulse.services.job_runner import JobReport

from tests.conftest import run


class StubRunner:
    def __init__(self):
        self.ran = []

    async def run_job(self, name):
        self.ran.append(name)
        return JobReport(job=name, processed=1)


class TestScheduler:

    def test_registers_every_job(self):
        target = AsyncIOScheduler()

        setup_scheduler(StubRunner(), target=target)

        assert {job.id for job in target.get_jobs()} == {
            "integration_sync",
            "insight_generation",
            "weekly_digest",
            "integration_health_check",
            "retention_cleanup",
        }

    def test_job_wrapper_returns_report_dict(self):
        runner = StubRunner()

        result = run(_job(runner, "cleanup")())

        assert runner.ran == ["cleanup"]
        assert result["job"] == "cleanup"
        assert result["success"]
