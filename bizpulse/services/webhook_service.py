"""
Webhook Service

Routes already-authenticated platform events to the right connector.
Signature verification happens before this layer.
"""
from typing import Any, Dict, List, Optional

from bizpulse.config import Settings, get_settings
from bizpulse.connectors.registry import ConnectorRegistry
from bizpulse.schemas import IntegrationStatus, WebhookResult
from bizpulse.stores.integration_store import IntegrationStore
from bizpulse.stores.webhook_event_store import WebhookEventStore
from bizpulse.utils.logger import log
from bizpulse.utils.rate_limiter import SlidingWindowLimiter


class WebhookService:
    """
    Applies one inbound event to every integration linked to the account.

    Each delivery is logged as a WebhookEvent and moves through
    received -> processed | ignored | failed.
    """

    def __init__(
        self,
        registry: ConnectorRegistry,
        integration_store: IntegrationStore,
        event_store: WebhookEventStore,
        settings: Optional[Settings] = None,
        limiter: Optional[SlidingWindowLimiter] = None,
    ):
        self.registry = registry
        self.integration_store = integration_store
        self.event_store = event_store
        self.settings = settings or get_settings()
        self.limiter = limiter or SlidingWindowLimiter(
            self.settings.webhook_rate_limit, self.settings.webhook_rate_window_seconds
        )

    async def handle(
        self,
        platform: str,
        platform_account_id: str,
        event_type: str,
        payload: Dict[str, Any],
        external_id: Optional[str] = None,
    ) -> List[WebhookResult]:
        connector = self.registry.get(platform)
        integrations = self.integration_store.find_by_account(platform, platform_account_id)
        if not integrations:
            log.warning(f"{platform} webhook {event_type} for unknown account {platform_account_id}")
            event_id = self.event_store.record_received(platform, event_type, external_id=external_id)
            self.event_store.mark_finished(event_id, "ignored", error="no matching integration")
            return []

        results = []
        for integration in integrations:
            results.append(await self._apply(connector, integration, event_type, payload, external_id))
        return results

    async def _apply(self, connector, integration, event_type, payload, external_id) -> WebhookResult:
        event_id = self.event_store.record_received(
            integration.platform, event_type, integration_id=integration.id, external_id=external_id
        )

        if external_id and self.event_store.was_processed(integration.id, external_id):
            log.info(f"Webhook {event_type} {external_id} already applied to integration {integration.id}")
            self.event_store.mark_finished(event_id, "ignored", error="duplicate delivery")
            return WebhookResult(success=True, topic=event_type, detail="duplicate")

        if not self.limiter.allow(integration.id):
            log.warning(f"Webhook rate limit exceeded for integration {integration.id}, dropping {event_type}")
            self.event_store.mark_finished(event_id, "failed", error="rate limited")
            return WebhookResult(success=False, topic=event_type, error="rate limited")

        try:
            result = await connector.handle_webhook_event(integration, event_type, payload)
        except Exception as e:
            log.error(f"Webhook {event_type} failed for integration {integration.id}: {e}")
            self.event_store.mark_finished(event_id, "failed", error=f"{type(e).__name__}: {e}")
            return WebhookResult(success=False, topic=event_type, error=str(e))

        if result.status_directive == IntegrationStatus.INACTIVE.value:
            self.integration_store.disconnect(integration.id, reason=result.detail or event_type)
        elif result.status_directive:
            self.integration_store.set_status(integration.id, result.status_directive)

        if not result.success:
            status = "failed"
        elif result.processed == 0 and result.status_directive is None:
            status = "ignored"
        else:
            status = "processed"
        self.event_store.mark_finished(event_id, status, records_applied=result.processed, error=result.error)
        log.info(f"Webhook {event_type} for integration {integration.id}: {status} ({result.processed} points)")
        return result
