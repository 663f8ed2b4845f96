"""
Sync Orchestrator
Drives connector syncs for integrations and owns their status transitions
"""
import asyncio
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from bizpulse.config import Settings, get_settings
from bizpulse.connectors.registry import ConnectorRegistry
from bizpulse.errors import CredentialError, error_kind
from bizpulse.schemas import IntegrationStatus, StepStats, SyncResult
from bizpulse.stores.integration_store import IntegrationStore
from bizpulse.utils.helpers import utcnow
from bizpulse.utils.logger import log


def merge_results(primary: SyncResult, secondary: Optional[SyncResult]) -> SyncResult:
    """Fold the low-frequency run into the primary result; the primary decides success"""
    if secondary is None:
        return primary
    primary.steps.update(secondary.steps)
    primary.step_errors.update(secondary.step_errors)
    if secondary.error_kind == CredentialError.kind and primary.error is None:
        primary.error = secondary.error
        primary.error_kind = secondary.error_kind
        primary.success = False
    primary.finished_at = secondary.finished_at or primary.finished_at
    return primary


class SyncOrchestrator:
    """
    Runs connector syncs for one integration or for every active one.

    Primary resources are synced on every run from ``last_sync_at``;
    low-frequency resources (customer rosters) only when the last roster
    sync is older than ``roster_sync_interval_hours``.
    """

    def __init__(
        self,
        registry: ConnectorRegistry,
        integration_store: IntegrationStore,
        settings: Optional[Settings] = None,
    ):
        self.registry = registry
        self.integration_store = integration_store
        self.settings = settings or get_settings()
        self._pools: Dict[str, asyncio.Semaphore] = {}

    def roster_due(self, integration, now: Optional[datetime] = None) -> bool:
        if integration.roster_synced_at is None:
            return True
        interval = timedelta(hours=self.settings.roster_sync_interval_hours)
        return (now or utcnow()) - integration.roster_synced_at >= interval

    async def sync_integration(self, integration) -> SyncResult:
        """
        Sync one integration and update its status.

        The integration ends ``active`` unless its primary resource failed
        or its credentials were rejected, in which case it ends ``error``.
        Sub-resource failures are returned in ``step_errors``.
        """
        connector = self.registry.get(integration.platform)
        started = utcnow()
        log.info(f"Syncing integration {integration.id} ({integration.platform}:{integration.platform_account_id})")
        self.integration_store.set_status(integration.id, IntegrationStatus.SYNCING.value)

        try:
            result = await connector.sync(
                integration,
                since=integration.last_sync_at,
                resources=connector.primary_resources,
            )

            roster_result = None
            if (
                connector.low_frequency_resources
                and result.error_kind != CredentialError.kind
                and self.roster_due(integration, started)
            ):
                roster_result = await connector.sync(
                    integration,
                    since=integration.roster_synced_at,
                    resources=connector.low_frequency_resources,
                )
                if not roster_result.step_errors:
                    self.integration_store.mark_roster_synced(integration.id, started)

            result = merge_results(result, roster_result)
        except Exception as e:
            # Anything the connector did not capture itself
            result = SyncResult(
                integration_id=integration.id,
                platform=integration.platform,
                error=f"{type(e).__name__}: {e}",
                error_kind=error_kind(e),
                started_at=started,
                finished_at=utcnow(),
            )

        self._record_outcome(integration, result, started)
        return result

    def _record_outcome(self, integration, result: SyncResult, started: datetime):
        if result.success:
            self.integration_store.mark_synced(integration.id, started)
            if result.step_errors:
                log.warning(
                    f"Integration {integration.id} synced with sub-step failures: "
                    f"{', '.join(sorted(result.step_errors))}"
                )
            log.info(
                f"Integration {integration.id} synced: {result.records_synced} points in "
                f"{result.duration_seconds:.1f}s"
            )
            return

        self.integration_store.set_status(
            integration.id,
            IntegrationStatus.ERROR.value,
            error=result.error,
            error_kind=result.error_kind,
        )
        log.error(f"Integration {integration.id} sync failed ({result.error_kind}): {result.error}")

    def _pool(self, platform: str) -> asyncio.Semaphore:
        if platform not in self._pools:
            self._pools[platform] = asyncio.Semaphore(max(1, self.settings.sync_pool_sizes.get(platform, 2)))
        return self._pools[platform]

    async def _sync_bounded(self, integration) -> SyncResult:
        """One worker slot per platform pool, with a hard timeout"""
        async with self._pool(integration.platform):
            try:
                return await asyncio.wait_for(
                    self.sync_integration(integration),
                    timeout=self.settings.sync_integration_timeout_seconds,
                )
            except asyncio.TimeoutError:
                message = f"sync timed out after {self.settings.sync_integration_timeout_seconds}s"
                log.error(f"Integration {integration.id} {message}")
                self.integration_store.set_status(
                    integration.id, IntegrationStatus.ERROR.value, error=message, error_kind="transient"
                )
                return SyncResult(
                    integration_id=integration.id,
                    platform=integration.platform,
                    error=message,
                    error_kind="transient",
                    finished_at=utcnow(),
                )
            except Exception as e:
                log.error(f"Integration {integration.id} sync crashed: {e}")
                return SyncResult(
                    integration_id=integration.id,
                    platform=integration.platform,
                    error=f"{type(e).__name__}: {e}",
                    error_kind=error_kind(e),
                    finished_at=utcnow(),
                )

    async def sync_all(self, integrations: Optional[List] = None) -> List[SyncResult]:
        """
        Sync every active integration concurrently.

        Concurrency is bounded per platform; one slow or failing integration
        never blocks or aborts the others.
        """
        if integrations is None:
            integrations = self.integration_store.list_active()
        # Pools are bound to the running loop
        self._pools = {}

        log.info(f"Starting sync for {len(integrations)} integrations")
        results = await asyncio.gather(*(self._sync_bounded(i) for i in integrations))

        succeeded = sum(1 for r in results if r.success)
        log.info(f"Sync cycle complete: {succeeded}/{len(results)} integrations successful")
        return list(results)


def summarize_results(results: List[SyncResult]) -> Dict:
    steps: Dict[str, StepStats] = {}
    for result in results:
        for name, stats in result.steps.items():
            total = steps.setdefault(name, StepStats())
            total.fetched += stats.fetched
            total.points_written += stats.points_written
            total.skipped += stats.skipped
            total.invalid += stats.invalid
    return {
        "integrations": len(results),
        "succeeded": sum(1 for r in results if r.success),
        "failed": sum(1 for r in results if not r.success),
        "records_synced": sum(r.records_synced for r in results),
        "steps": {name: stats.to_dict() for name, stats in steps.items()},
    }
