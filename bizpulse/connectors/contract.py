"""
The contract every platform connector satisfies.

Connectors do not share a base class; the orchestrator, webhook service
and registry only rely on this protocol.
"""
from datetime import datetime
from typing import Any, Dict, Optional, Protocol, Sequence, runtime_checkable

from bizpulse.schemas import SyncResult, WebhookResult


@runtime_checkable
class PlatformConnector(Protocol):
    platform: str
    primary_resources: Sequence[str]
    low_frequency_resources: Sequence[str]

    async def sync(
        self,
        integration,
        since: Optional[datetime] = None,
        resources: Optional[Sequence[str]] = None,
    ) -> SyncResult:
        """Pull records since ``since`` (bounded initial window when None)"""
        ...

    async def handle_webhook_event(
        self,
        integration,
        event_type: str,
        payload: Dict[str, Any],
    ) -> WebhookResult:
        """Apply one already-authenticated event idempotently"""
        ...

    async def test_connection(self, integration) -> Dict[str, Any]:
        """Cheap authenticated call used to verify credentials"""
        ...
