"""
Webhook event log store
"""
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from bizpulse.models.base import SessionLocal
from bizpulse.models.webhook_event import WebhookEvent
from bizpulse.utils.helpers import utcnow


class WebhookEventStore:
    """Records each inbound event and its outcome"""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def record_received(
        self,
        platform: str,
        topic: str,
        integration_id: Optional[int] = None,
        external_id: Optional[str] = None,
    ) -> int:
        db = self._session_factory()
        try:
            event = WebhookEvent(
                integration_id=integration_id,
                platform=platform,
                topic=topic,
                external_id=external_id,
                status="received",
                received_at=utcnow(),
            )
            db.add(event)
            db.commit()
            return event.id
        finally:
            db.close()

    def mark_finished(
        self,
        event_id: int,
        status: str,
        records_applied: int = 0,
        error: Optional[str] = None,
    ):
        db = self._session_factory()
        try:
            event = db.get(WebhookEvent, event_id)
            if event is None:
                return
            event.status = status
            event.records_applied = records_applied
            event.error = error
            event.processed_at = utcnow()
            db.commit()
        finally:
            db.close()

    def was_processed(self, integration_id: int, external_id: str) -> bool:
        """Whether this delivery was already applied to the integration"""
        db = self._session_factory()
        try:
            return db.query(WebhookEvent.id).filter(
                WebhookEvent.integration_id == integration_id,
                WebhookEvent.external_id == external_id,
                WebhookEvent.status == "processed",
            ).first() is not None
        finally:
            db.close()

    def list_for_integration(self, integration_id: int, limit: int = 50) -> List[WebhookEvent]:
        db = self._session_factory()
        try:
            return (
                db.query(WebhookEvent)
                .filter(WebhookEvent.integration_id == integration_id)
                .order_by(WebhookEvent.received_at.desc(), WebhookEvent.id.desc())
                .limit(limit)
                .all()
            )
        finally:
            db.close()
