"""
Job Runner

The five periodic jobs, callable from any trigger (APScheduler, a queue
consumer, the CLI). Jobs never raise: per-unit failures are collected in
the JobReport and a crashed job is retried, then reported.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from bizpulse.config import Settings, get_settings
from bizpulse.schemas import IntegrationStatus
from bizpulse.services.insights_engine import InsightsEngine
from bizpulse.services.notification_service import NotificationService
from bizpulse.services.sync_orchestrator import SyncOrchestrator, summarize_results
from bizpulse.stores.insight_store import InsightStore
from bizpulse.stores.integration_store import IntegrationStore
from bizpulse.stores.metric_store import MetricStore
from bizpulse.utils.helpers import utcnow
from bizpulse.utils.logger import log
from bizpulse.utils.retry import RetryPolicy, RetryStats, call_with_retry


@dataclass
class JobReport:
    job: str
    success: bool = True
    processed: int = 0
    skipped: int = 0
    failures: Dict[str, str] = field(default_factory=dict)  # unit -> error
    details: Dict[str, Any] = field(default_factory=dict)
    attempts: int = 1
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def fail_unit(self, unit: str, error: BaseException):
        self.failures[unit] = f"{type(error).__name__}: {error}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job": self.job,
            "success": self.success,
            "processed": self.processed,
            "skipped": self.skipped,
            "failures": dict(self.failures),
            "details": self.details,
            "attempts": self.attempts,
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class JobRunner:
    """
    Scheduler interface: run_sync_cycle, run_insight_cycle,
    run_digest_cycle, run_health_check and run_cleanup.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        engine: InsightsEngine,
        metric_store: MetricStore,
        insight_store: InsightStore,
        integration_store: IntegrationStore,
        notifications: NotificationService,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep=asyncio.sleep,
    ):
        self.orchestrator = orchestrator
        self.engine = engine
        self.metric_store = metric_store
        self.insight_store = insight_store
        self.integration_store = integration_store
        self.notifications = notifications
        self.settings = settings or get_settings()
        self.clock = clock
        self._sleep = sleep

        self.jobs: Dict[str, Callable[[], Any]] = {
            "sync": self.run_sync_cycle,
            "insights": self.run_insight_cycle,
            "digest": self.run_digest_cycle,
            "health_check": self.run_health_check,
            "cleanup": self.run_cleanup,
        }

    # ── Jobs ─────────────────────────────────────────────

    async def run_sync_cycle(self) -> JobReport:
        """Sync every active integration"""
        report = JobReport(job="sync")
        results = await self.orchestrator.sync_all()
        for result in results:
            if result.success:
                report.processed += 1
            else:
                report.failures[f"integration:{result.integration_id}"] = result.error or "sync failed"
        report.details = summarize_results(results)
        return report

    async def run_insight_cycle(self) -> JobReport:
        """Generate insights for every organization with an active integration"""
        report = JobReport(job="insights")
        generated = 0
        organizations = await asyncio.to_thread(self.integration_store.organizations_with_active_integrations)
        for organization_id in organizations:
            try:
                # Generation is synchronous database and CPU work
                run = await asyncio.to_thread(self.engine.run, organization_id)
                generated += len(run.insights)
                report.processed += 1
                if run.analysis_errors:
                    report.details.setdefault("analysis_errors", {})[organization_id] = run.analysis_errors
            except Exception as e:
                log.error(f"Insight generation failed for organization {organization_id}: {e}")
                report.fail_unit(organization_id, e)
        report.details["insights_generated"] = generated
        return report

    async def run_digest_cycle(self) -> JobReport:
        """Send each organization's top insights from the lookback window to its admins"""
        report = JobReport(job="digest")
        since = self.clock() - timedelta(days=self.settings.digest_lookback_days)

        organizations = await asyncio.to_thread(self.integration_store.organizations_with_active_integrations)
        for organization_id in organizations:
            try:
                recent = await asyncio.to_thread(
                    self.insight_store.list_recent,
                    organization_id, limit=self.settings.insight_max_per_organization, since=since,
                )
                top = sorted(recent, key=lambda i: i.priority, reverse=True)[:self.settings.digest_top_n]
                if not top:
                    report.skipped += 1
                    continue

                summary = await asyncio.to_thread(self.insight_store.summary, organization_id)
                outcome = await self.notifications.send_digest(organization_id, top, summary)
                if outcome["results"] and not outcome["success"]:
                    report.failures[organization_id] = "digest delivery failed on every channel"
                elif outcome["results"]:
                    report.processed += 1
                else:
                    report.skipped += 1
            except Exception as e:
                log.error(f"Digest failed for organization {organization_id}: {e}")
                report.fail_unit(organization_id, e)
        return report

    async def run_health_check(self) -> JobReport:
        """Flag integrations with no successful sync inside the staleness threshold"""
        report = JobReport(job="health_check")
        hours = self.settings.health_stale_hours
        threshold = self.clock() - timedelta(hours=hours)

        stale = await asyncio.to_thread(self.integration_store.list_stale, threshold)
        for integration in stale:
            try:
                await asyncio.to_thread(
                    self.integration_store.set_status,
                    integration.id,
                    IntegrationStatus.ERROR.value,
                    error=f"No successful sync in over {hours} hours",
                    metadata={"health_status": "sync_stale", "stale_detected_at": self.clock().isoformat()},
                )
                await self.notifications.send_stale_integration_alert(integration, hours)
                report.processed += 1
            except Exception as e:
                log.error(f"Health check failed for integration {integration.id}: {e}")
                report.fail_unit(f"integration:{integration.id}", e)

        report.details["stale_integrations"] = report.processed + len(report.failures)
        return report

    async def run_cleanup(self) -> JobReport:
        """Retention cleanup for data points, insights and webhook events"""
        report = JobReport(job="cleanup")
        now = self.clock()
        steps = {
            "data_points": lambda: self.metric_store.delete_older_than(
                "data_points", now - timedelta(days=self.settings.data_point_retention_days)
            ),
            "insights": lambda: self.insight_store.delete_older_than(
                None, now - timedelta(days=self.settings.insight_retention_days)
            ),
            "webhook_events": lambda: self.metric_store.delete_older_than(
                "webhook_events", now - timedelta(days=self.settings.webhook_event_retention_days)
            ),
        }
        for name, step in steps.items():
            try:
                deleted = await asyncio.to_thread(step)
                report.details[f"{name}_deleted"] = deleted
                report.processed += deleted
            except Exception as e:
                log.error(f"Cleanup of {name} failed: {e}")
                report.fail_unit(name, e)
        return report

    # ── Running ──────────────────────────────────────────

    async def run_job(self, name: str) -> JobReport:
        """
        Run one job by name, retrying it if it crashes.

        Always returns a report; an unknown name or an exhausted retry is
        reported as a failed job.
        """
        job = self.jobs.get(name)
        if job is None:
            return JobReport(job=name, success=False, error=f"Unknown job '{name}'")

        started = self.clock()
        stats = RetryStats()
        policy = RetryPolicy(
            max_attempts=max(1, self.settings.job_retry_attempts),
            base_delay=self.settings.retry_base_delay,
            max_delay=self.settings.retry_max_delay,
            retryable_exceptions=(Exception,),
        )
        log.info(f"Running job: {name}")
        try:
            report = await call_with_retry(policy, job, description=f"job {name}", stats=stats, sleep=self._sleep)
        except Exception as e:
            report = JobReport(job=name, success=False, error=f"{type(e).__name__}: {e}")

        report.attempts = stats.attempts
        report.started_at = started
        report.finished_at = self.clock()
        # Partial success still counts; every unit failing does not
        if report.failures and not report.processed:
            report.success = False
        if report.success:
            log.info(
                f"Job {name} complete: {report.processed} processed, {report.skipped} skipped, "
                f"{len(report.failures)} failed"
            )
        else:
            log.error(f"Job {name} failed: {report.error or report.failures}")
        return report

    async def run_tick(self, names: Optional[Iterable[str]] = None) -> Dict[str, JobReport]:
        """Run sibling jobs one after another; a failing job never stops the next"""
        reports = {}
        for name in list(names or self.jobs):
            reports[name] = await self.run_job(name)
        return reports

    def list_jobs(self) -> List[str]:
        return list(self.jobs)
