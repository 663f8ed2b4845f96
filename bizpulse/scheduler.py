"""
Scheduler for the BizPulse periodic jobs

Uses APScheduler to trigger the JobRunner on its cadence. The jobs
themselves live in bizpulse.services.job_runner and can be run by any
other trigger as well.
"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from zoneinfo import ZoneInfo
import asyncio
from typing import Optional

from bizpulse.config import get_settings
from bizpulse.services.container import get_services
from bizpulse.services.job_runner import JobRunner
from bizpulse.utils.logger import log

settings = get_settings()
scheduler = AsyncIOScheduler()


def _job(runner: JobRunner, name: str):
    async def run():
        report = await runner.run_job(name)
        return report.to_dict()
    run.__name__ = f"run_{name}"
    return run


def setup_scheduler(runner: Optional[JobRunner] = None, target: Optional[AsyncIOScheduler] = None):
    """
    Register every job on the scheduler.

    Frequencies (scheduler timezone):
    - Sync:          every ``sync_interval_hours``
    - Insights:      daily at ``insights_cron_hour``
    - Digest:        weekly on ``digest_cron_day_of_week`` at ``digest_cron_hour``
    - Health check:  every ``health_check_interval_hours``
    - Cleanup:       daily at ``cleanup_cron_hour``
    """
    runner = runner or get_services().jobs
    target = target or scheduler
    tz = ZoneInfo(settings.scheduler_timezone)

    # ── Sync ─────────────────────────────────────────────
    target.add_job(
        _job(runner, "sync"),
        trigger=IntervalTrigger(hours=settings.sync_interval_hours),
        id='integration_sync',
        name='Sync All Active Integrations',
        replace_existing=True,
        max_instances=1
    )

    # ── Insights ─────────────────────────────────────────
    target.add_job(
        _job(runner, "insights"),
        trigger=CronTrigger(hour=settings.insights_cron_hour, minute=0, timezone=tz),
        id='insight_generation',
        name='Daily Insight Generation',
        replace_existing=True,
        max_instances=1
    )

    # ── Digest ───────────────────────────────────────────
    target.add_job(
        _job(runner, "digest"),
        trigger=CronTrigger(
            day_of_week=settings.digest_cron_day_of_week, hour=settings.digest_cron_hour, minute=0, timezone=tz
        ),
        id='weekly_digest',
        name='Weekly Insight Digest',
        replace_existing=True,
        max_instances=1
    )

    # ── Health check ─────────────────────────────────────
    target.add_job(
        _job(runner, "health_check"),
        trigger=IntervalTrigger(hours=settings.health_check_interval_hours),
        id='integration_health_check',
        name='Integration Health Check',
        replace_existing=True,
        max_instances=1
    )

    # ── Cleanup ──────────────────────────────────────────
    target.add_job(
        _job(runner, "cleanup"),
        trigger=CronTrigger(hour=settings.cleanup_cron_hour, minute=0, timezone=tz),
        id='retention_cleanup',
        name='Retention Cleanup',
        replace_existing=True,
        max_instances=1
    )

    log.info(f"Scheduler configured with all jobs (timezone: {settings.scheduler_timezone})")


def start_scheduler():
    """Start the scheduler"""
    setup_scheduler()
    scheduler.start()
    log.info("Scheduler started")


def stop_scheduler():
    """Stop the scheduler"""
    if scheduler.running:
        scheduler.shutdown()
    log.info("Scheduler stopped")


def run_job_now(job_name: str) -> dict:
    """
    Manually run one job to completion

    Args:
        job_name: sync, insights, digest, health_check or cleanup

    Returns:
        The job report as a dict
    """
    runner = get_services().jobs
    if job_name not in runner.jobs:
        return {
            'success': False,
            'error': f'Unknown job: {job_name}. Valid options: {", ".join(runner.list_jobs())}'
        }

    log.info(f"Manually triggering {job_name} job...")
    report = asyncio.run(runner.run_job(job_name))
    return report.to_dict()


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs

    Returns:
        List of job info dicts
    """
    jobs = []

    for job in scheduler.get_jobs():
        next_run = getattr(job, "next_run_time", None)

        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': next_run.isoformat() if next_run else None,
            'trigger': str(job.trigger)
        })

    return jobs


async def _serve():
    from bizpulse.models.base import init_db

    init_db()
    start_scheduler()
    try:
        await asyncio.Event().wait()
    finally:
        stop_scheduler()


# CLI for manual runs

if __name__ == "__main__":
    import sys

    if len(sys.argv) < 2:
        print("Usage: python -m bizpulse.scheduler <command> [job_name]")
        print("\nCommands:")
        print("  start          Start the scheduler")
        print("  run <job>      Run a job once")
        print("  list           List all scheduled jobs")
        print("\nJobs:")
        print("  sync, insights, digest, health_check, cleanup")
        sys.exit(1)

    command = sys.argv[1]

    if command == "start":
        print("Starting scheduler...")
        try:
            asyncio.run(_serve())
        except (KeyboardInterrupt, SystemExit):
            print("\nShutting down scheduler...")

    elif command == "run":
        if len(sys.argv) < 3:
            print("Error: Please specify a job name")
            print("Usage: python -m bizpulse.scheduler run <job_name>")
            sys.exit(1)

        result = run_job_now(sys.argv[2])

        if result['success']:
            print(f"✓ {result['job']}: {result['processed']} processed, {len(result['failures'])} failed")
        else:
            print(f"✗ Error: {result.get('error') or result.get('failures')}")
            sys.exit(1)

    elif command == "list":
        print("\nScheduled Jobs:")
        print("-" * 80)

        setup_scheduler()
        jobs = get_scheduled_jobs()

        if not jobs:
            print("No jobs scheduled")
        else:
            for job in jobs:
                print(f"\nID:       {job['id']}")
                print(f"Name:     {job['name']}")
                print(f"Next Run: {job['next_run']}")
                print(f"Trigger:  {job['trigger']}")

    else:
        print(f"Unknown command: {command}")
        sys.exit(1)
