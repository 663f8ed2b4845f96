"""
Integration store

Reads and state transitions for connected platform accounts. The sync
orchestrator, webhook service and health check are the only writers.
"""
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from bizpulse.models.base import SessionLocal
from bizpulse.models.integration import Integration
from bizpulse.schemas import IntegrationStatus
from bizpulse.utils.helpers import utcnow

# Anything not disconnected counts as an active integration
CONNECTED_STATUSES = (
    IntegrationStatus.PENDING.value,
    IntegrationStatus.ACTIVE.value,
    IntegrationStatus.SYNCING.value,
    IntegrationStatus.ERROR.value,
)


class IntegrationStore:
    """SQLAlchemy-backed integration repository"""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def _update(self, integration_id: int, **fields) -> Optional[Integration]:
        db = self._session_factory()
        try:
            integration = db.get(Integration, integration_id)
            if integration is None:
                return None
            meta_update = fields.pop("meta_update", None)
            meta_remove = fields.pop("meta_remove", ())
            for name, value in fields.items():
                setattr(integration, name, value)
            if meta_update or meta_remove:
                meta = dict(integration.meta or {})
                meta.update(meta_update or {})
                for key in meta_remove:
                    meta.pop(key, None)
                integration.meta = meta
            db.commit()
            db.refresh(integration)
            return integration
        finally:
            db.close()

    # ── Reads ────────────────────────────────────────────

    def get(self, integration_id: int) -> Optional[Integration]:
        db = self._session_factory()
        try:
            return db.get(Integration, integration_id)
        finally:
            db.close()

    def find_by_account(self, platform: str, platform_account_id: str) -> List[Integration]:
        """All connected integrations for a platform account, across organizations"""
        db = self._session_factory()
        try:
            return db.query(Integration).filter(
                Integration.platform == platform,
                Integration.platform_account_id == platform_account_id,
                Integration.status.in_(CONNECTED_STATUSES),
            ).all()
        finally:
            db.close()

    def list_active(self, platform: Optional[str] = None, include_credential_errors: bool = False) -> List[Integration]:
        """
        Integrations eligible for a sync cycle.

        Integrations that failed on credentials stay out until the user
        reconnects them, unless ``include_credential_errors`` is set.
        """
        db = self._session_factory()
        try:
            query = db.query(Integration).filter(Integration.status.in_(CONNECTED_STATUSES))
            if platform:
                query = query.filter(Integration.platform == platform)
            integrations = query.order_by(Integration.id).all()
        finally:
            db.close()

        if include_credential_errors:
            return integrations
        return [i for i in integrations if (i.meta or {}).get("error_kind") != "credential"]

    def list_for_organization(self, organization_id: str, connected_only: bool = True) -> List[Integration]:
        db = self._session_factory()
        try:
            query = db.query(Integration).filter(Integration.organization_id == organization_id)
            if connected_only:
                query = query.filter(Integration.status.in_(CONNECTED_STATUSES))
            return query.order_by(Integration.id).all()
        finally:
            db.close()

    def organizations_with_active_integrations(self) -> List[str]:
        db = self._session_factory()
        try:
            rows = (
                db.query(Integration.organization_id)
                .filter(Integration.status.in_(CONNECTED_STATUSES))
                .distinct()
                .order_by(Integration.organization_id)
                .all()
            )
            return [row[0] for row in rows]
        finally:
            db.close()

    def list_stale(self, threshold: datetime) -> List[Integration]:
        """Active integrations whose last successful sync is older than ``threshold``"""
        db = self._session_factory()
        try:
            candidates = db.query(Integration).filter(
                Integration.status.in_((IntegrationStatus.ACTIVE.value, IntegrationStatus.SYNCING.value))
            ).all()
        finally:
            db.close()

        stale = []
        for integration in candidates:
            reference = integration.last_sync_at or integration.created_at
            if reference is None or reference < threshold:
                stale.append(integration)
        return stale

    # ── Writes ───────────────────────────────────────────

    def link_integration(
        self,
        organization_id: str,
        platform: str,
        platform_account_id: str,
        access_token: str,
        refresh_token: Optional[str] = None,
        token_expires_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Integration:
        """Create or reconnect the integration for (organization, platform, account)"""
        db = self._session_factory()
        try:
            integration = db.query(Integration).filter(
                Integration.organization_id == organization_id,
                Integration.platform == platform,
                Integration.platform_account_id == platform_account_id,
            ).first()

            if integration is None:
                integration = Integration(
                    organization_id=organization_id,
                    platform=platform,
                    platform_account_id=platform_account_id,
                    status=IntegrationStatus.PENDING.value,
                    meta={},
                )
                db.add(integration)

            integration.access_token = access_token
            integration.refresh_token = refresh_token
            integration.token_expires_at = token_expires_at
            integration.last_error = None
            if integration.status in (IntegrationStatus.INACTIVE.value, IntegrationStatus.ERROR.value):
                integration.status = IntegrationStatus.PENDING.value
            meta = {k: v for k, v in (integration.meta or {}).items() if k not in ("error_kind", "disconnected_at")}
            meta.update(metadata or {})
            integration.meta = meta

            db.commit()
            db.refresh(integration)
            return integration
        finally:
            db.close()

    def set_status(
        self,
        integration_id: int,
        status: str,
        error: Optional[str] = None,
        error_kind: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Integration]:
        meta_update = dict(metadata or {})
        meta_remove = ()
        if error_kind:
            meta_update["error_kind"] = error_kind
        elif status != IntegrationStatus.ERROR.value:
            meta_remove = ("error_kind",)
        return self._update(
            integration_id,
            status=status,
            last_error=error,
            meta_update=meta_update,
            meta_remove=meta_remove,
        )

    def mark_synced(self, integration_id: int, synced_at: Optional[datetime] = None) -> Optional[Integration]:
        return self._update(
            integration_id,
            status=IntegrationStatus.ACTIVE.value,
            last_sync_at=synced_at or utcnow(),
            last_error=None,
            meta_remove=("error_kind", "health_status"),
        )

    def mark_roster_synced(self, integration_id: int, synced_at: Optional[datetime] = None) -> Optional[Integration]:
        return self._update(integration_id, roster_synced_at=synced_at or utcnow())

    def update_credentials(
        self,
        integration_id: int,
        access_token: str,
        refresh_token: Optional[str] = None,
        token_expires_at: Optional[datetime] = None,
    ) -> Optional[Integration]:
        fields = {"access_token": access_token, "token_expires_at": token_expires_at}
        if refresh_token:
            fields["refresh_token"] = refresh_token
        return self._update(integration_id, **fields)

    def disconnect(self, integration_id: int, reason: str = "user_request") -> Optional[Integration]:
        return self._update(
            integration_id,
            status=IntegrationStatus.INACTIVE.value,
            access_token=None,
            refresh_token=None,
            token_expires_at=None,
            meta_update={"disconnected_at": utcnow().isoformat(), "disconnect_reason": reason},
            meta_remove=("error_kind",),
        )
