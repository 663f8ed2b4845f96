"""
Integration endpoints

Linking, on-demand sync, connection tests and disconnects. Full sync runs
go to the background; progress is read from GET /integrations/sync/progress.
"""
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from typing import Any, Dict, Optional
from datetime import datetime
from pydantic import BaseModel

from bizpulse.errors import BizPulseError, UnknownPlatformError
from bizpulse.schemas import Platform
from bizpulse.services.container import Services, get_services
from bizpulse.utils.helpers import utcnow
from bizpulse.utils.logger import log

router = APIRouter(prefix="/integrations", tags=["integrations"])

# In-memory sync status for background tasks
_sync_status = {}


def _update_sync_status(key: str, status: str, result=None, error=None):
    _sync_status[key] = {
        "status": status,
        "started_at": _sync_status.get(key, {}).get("started_at", utcnow().isoformat()),
        "updated_at": utcnow().isoformat(),
        "result": result,
        "error": error,
    }


class LinkIntegrationRequest(BaseModel):
    organization_id: str
    platform: Platform
    platform_account_id: str
    access_token: str
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None


def _describe(integration) -> dict:
    meta = integration.meta or {}
    return {
        "id": integration.id,
        "organization_id": integration.organization_id,
        "platform": integration.platform,
        "platform_account_id": integration.platform_account_id,
        "status": integration.status,
        "last_sync_at": integration.last_sync_at.isoformat() if integration.last_sync_at else None,
        "last_error": integration.last_error,
        "error_kind": meta.get("error_kind"),
        "health_status": meta.get("health_status"),
    }


def _get_or_404(services: Services, integration_id: int):
    integration = services.integration_store.get(integration_id)
    if integration is None:
        raise HTTPException(status_code=404, detail=f"Integration {integration_id} not found")
    return integration


async def _run_sync_all(services: Services):
    """Background task: sync every active integration."""
    _update_sync_status("all", "running")
    try:
        report = await services.jobs.run_job("sync")
        _update_sync_status("all", "completed" if report.success else "failed", result=report.to_dict())
        log.info(f"Background sync completed: {report.processed} integrations synced")
    except Exception as e:
        log.error(f"Background sync error: {str(e)}")
        _update_sync_status("all", "failed", error=str(e))


@router.post("")
async def link_integration(request: LinkIntegrationRequest, services: Services = Depends(get_services)):
    """
    Store credentials for a newly connected (or reconnected) account

    Reconnecting clears a previous credential error, so the integration is
    picked up again by the next sync cycle.
    """
    try:
        integration = services.integration_store.link_integration(
            organization_id=request.organization_id,
            platform=request.platform.value,
            platform_account_id=request.platform_account_id,
            access_token=request.access_token,
            refresh_token=request.refresh_token,
            token_expires_at=request.token_expires_at,
            metadata=request.metadata,
        )
        log.info(f"Linked {integration.platform} integration {integration.id} for {integration.organization_id}")
        return _describe(integration)
    except Exception as e:
        log.error(f"Error linking integration: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("")
async def list_integrations(
    organization_id: str = Query(..., description="Organization to list"),
    include_disconnected: bool = False,
    services: Services = Depends(get_services),
):
    integrations = services.integration_store.list_for_organization(
        organization_id, connected_only=not include_disconnected
    )
    return {"integrations": [_describe(i) for i in integrations], "count": len(integrations)}


@router.post("/sync")
async def sync_all_integrations(background_tasks: BackgroundTasks, services: Services = Depends(get_services)):
    """
    Sync every active integration (runs in background to avoid timeout).
    Check progress at GET /integrations/sync/progress
    """
    _update_sync_status("all", "started")
    background_tasks.add_task(_run_sync_all, services)
    return {
        "message": "Sync started in background",
        "check_progress": "/integrations/sync/progress",
    }


@router.get("/sync/progress")
async def sync_progress():
    """Status of background sync runs"""
    return _sync_status


@router.post("/{integration_id}/sync")
async def sync_integration(integration_id: int, services: Services = Depends(get_services)):
    """Sync one integration now and return its result"""
    integration = _get_or_404(services, integration_id)
    try:
        result = await services.orchestrator.sync_integration(integration)
        return result.to_dict()
    except UnknownPlatformError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        log.error(f"Sync error for integration {integration_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{integration_id}/test")
async def test_integration(integration_id: int, services: Services = Depends(get_services)):
    """Check that the stored credentials still work"""
    integration = _get_or_404(services, integration_id)
    try:
        connector = services.registry.get(integration.platform)
        return await connector.test_connection(integration)
    except BizPulseError as e:
        return {"success": False, "platform": integration.platform, "error": str(e), "error_kind": e.kind}
    except Exception as e:
        log.error(f"Connection test error for integration {integration_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{integration_id}/disconnect")
async def disconnect_integration(
    integration_id: int,
    reason: str = Query("user_request"),
    services: Services = Depends(get_services),
):
    """Clear credentials and mark the integration inactive; its history is kept"""
    _get_or_404(services, integration_id)
    integration = services.integration_store.disconnect(integration_id, reason=reason)
    log.info(f"Disconnected integration {integration_id} ({reason})")
    return _describe(integration)
