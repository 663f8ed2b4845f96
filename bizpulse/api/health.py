"""
Health check and status endpoints
"""
from fastapi import APIRouter, Depends

from bizpulse import __version__
from bizpulse.config import get_settings
from bizpulse.services.container import Services, get_services
from bizpulse.utils.helpers import utcnow

settings = get_settings()

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "version": __version__
    }


@router.get("/status")
async def get_status(services: Services = Depends(get_services)):
    """Get system status"""
    from bizpulse.scheduler import get_scheduled_jobs

    return {
        "app_name": settings.app_name,
        "version": __version__,
        "environment": settings.environment,
        "platforms": services.registry.platforms,
        "jobs": services.jobs.list_jobs(),
        "scheduled": get_scheduled_jobs(),
        "notifications": services.notifications.get_delivery_stats(),
        "timestamp": utcnow().isoformat()
    }
