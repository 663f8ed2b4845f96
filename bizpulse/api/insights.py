"""
Insight endpoints

Generation on demand plus the read, filter and mark-read operations the
dashboard uses.
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from typing import List, Optional
from pydantic import BaseModel

from bizpulse.schemas import InsightCategory, InsightFilters, InsightType, Urgency
from bizpulse.services.container import Services, get_services
from bizpulse.utils.logger import log

router = APIRouter(prefix="/insights", tags=["insights"])


class MarkReadRequest(BaseModel):
    insight_ids: Optional[List[int]] = None  # None marks every insight
    read: bool = True


def _serialize(insights) -> List[dict]:
    return [insight.model_dump(mode="json") | {"priority": insight.priority} for insight in insights]


@router.post("/{organization_id}/generate")
async def generate_insights(
    organization_id: str,
    timeframe_days: Optional[int] = Query(None, ge=1, le=365, description="Analysis window in days"),
    services: Services = Depends(get_services),
):
    """
    Run the insights engine for one organization and persist the top results
    """
    try:
        run = services.insights.generate(organization_id, timeframe_days)
        return {
            "organization_id": organization_id,
            "window": run.window.model_dump(mode="json"),
            "onboarding": run.onboarding,
            "candidates": run.generated,
            "deleted": run.deleted,
            "analysis_errors": run.analysis_errors,
            "insights": _serialize(run.insights),
        }
    except Exception as e:
        log.error(f"Insight generation error for {organization_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{organization_id}")
async def list_insights(
    organization_id: str,
    type: Optional[InsightType] = None,
    category: Optional[InsightCategory] = None,
    urgency: Optional[Urgency] = None,
    is_read: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    services: Services = Depends(get_services),
):
    """
    List insights newest first with optional filters
    """
    try:
        filters = InsightFilters(type=type, category=category, urgency=urgency, is_read=is_read)
        result = services.insights.list_insights(organization_id, filters, page, limit)
        return {
            "items": _serialize(result.items),
            "total": result.total,
            "page": result.page,
            "limit": result.limit,
            "pages": result.pages,
        }
    except Exception as e:
        log.error(f"Error listing insights for {organization_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{organization_id}/actionable")
async def actionable_insights(
    organization_id: str,
    limit: int = Query(20, ge=1, le=100),
    services: Services = Depends(get_services),
):
    """Unread insights that carry a recommended action"""
    try:
        insights = services.insights.actionable(organization_id, limit)
        return {"insights": _serialize(insights), "count": len(insights)}
    except Exception as e:
        log.error(f"Error fetching actionable insights: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{organization_id}/high-priority")
async def high_priority_insights(
    organization_id: str,
    limit: int = Query(10, ge=1, le=50),
    services: Services = Depends(get_services),
):
    try:
        insights = services.insights.high_priority(organization_id, limit)
        return {"insights": _serialize(insights), "count": len(insights)}
    except Exception as e:
        log.error(f"Error fetching high priority insights: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{organization_id}/summary")
async def insight_summary(organization_id: str, services: Services = Depends(get_services)):
    """Counts by type, urgency and read state"""
    try:
        return services.insights.summary(organization_id).model_dump(mode="json")
    except Exception as e:
        log.error(f"Error building insight summary: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{organization_id}/read")
async def mark_insights_read(
    organization_id: str,
    request: MarkReadRequest,
    services: Services = Depends(get_services),
):
    """
    Mark insights read or unread

    Omit ``insight_ids`` to update every insight of the organization.
    """
    try:
        updated = services.insights.mark_read(organization_id, request.insight_ids, request.read)
        return {"updated": updated, "read": request.read}
    except Exception as e:
        log.error(f"Error marking insights: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))
