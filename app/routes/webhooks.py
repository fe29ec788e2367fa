from fastapi import APIRouter, HTTPException, Depends, Request

from app.core.config import get_webhook_secret
from app.core.exceptions import ValidationError, WebhookAuthenticationError
from app.dependencies import ReconciliationServices, get_services
from app.services.webhook_ingestion import SIGNATURE_HEADER, verify_signature

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


async def verified_body(request: Request, webhook_secret: str = Depends(get_webhook_secret)) -> bytes:
    """Verify the storefront signature over the raw body before anything parses it"""
    body = await request.body()
    try:
        verify_signature(body, request.headers.get(SIGNATURE_HEADER), webhook_secret)
    except WebhookAuthenticationError as e:
        raise HTTPException(status_code=401, detail=str(e))
    return body


async def _ingest(topic: str, body: bytes, services: ReconciliationServices) -> dict:
    try:
        result = await services.ingestion.ingest_verified(topic, body)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"status": "received", **result}


@router.post("/orders/paid")
async def order_paid_webhook(
    body: bytes = Depends(verified_body),
    services: ReconciliationServices = Depends(get_services),
):
    """Storefront order payment captured"""
    return await _ingest("orders/paid", body, services)


@router.post("/orders/create")
async def order_created_webhook(
    body: bytes = Depends(verified_body),
    services: ReconciliationServices = Depends(get_services),
):
    return await _ingest("orders/create", body, services)


@router.post("/orders/cancelled")
async def order_cancelled_webhook(
    body: bytes = Depends(verified_body),
    services: ReconciliationServices = Depends(get_services),
):
    """Storefront order cancelled; the listing may be restored"""
    return await _ingest("orders/cancelled", body, services)


@router.post("/orders/updated")
async def order_updated_webhook(
    body: bytes = Depends(verified_body),
    services: ReconciliationServices = Depends(get_services),
):
    return await _ingest("orders/updated", body, services)
