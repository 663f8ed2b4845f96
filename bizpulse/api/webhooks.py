"""
Webhook endpoints

Deliveries arrive here after the edge has verified their signatures. The
event type comes from the Shopify topic header or, for Stripe, from the
event body.
"""
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from typing import Optional

from bizpulse.errors import UnknownPlatformError
from bizpulse.services.container import Services, get_services
from bizpulse.utils.logger import log

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/{platform}/{account_id}")
async def receive_webhook(
    platform: str,
    account_id: str,
    request: Request,
    x_shopify_topic: Optional[str] = Header(None),
    x_shopify_webhook_id: Optional[str] = Header(None),
    services: Services = Depends(get_services),
):
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Body must be JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")

    event_type = x_shopify_topic or payload.get("type")
    if not event_type:
        raise HTTPException(status_code=400, detail="Missing event type")
    external_id = x_shopify_webhook_id or (payload.get("id") if x_shopify_topic is None else None)

    try:
        results = await services.webhooks.handle(
            platform, account_id, event_type, payload, external_id=str(external_id) if external_id else None
        )
    except UnknownPlatformError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        log.error(f"Webhook {platform}/{event_type} error: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))

    return {
        "received": True,
        "event_type": event_type,
        "integrations": len(results),
        "processed": sum(r.processed for r in results),
        "errors": [r.error for r in results if r.error],
    }
