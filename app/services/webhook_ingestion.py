"""
Storefront webhook authentication and normalization.

Signatures are checked against the exact bytes received, before any
JSON parsing. Authenticated order payloads become one canonical event per
line item that belongs to a tracked listing.
"""

import base64
import hashlib
import hmac
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from app.core.enums import EventKind
from app.core.exceptions import ValidationError, WebhookAuthenticationError
from app.core.utils import utc_now
from app.integrations.events import ReconciliationEvent
from app.schemas.listing import ListingState
from app.services.listing_store import ListingRepository

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Shopify-Hmac-Sha256"
SALE_FINANCIAL_STATUSES = {"paid", "partially_paid"}

SALE_TOPICS = {"orders/paid", "orders/create"}
CANCEL_TOPICS = {"orders/cancelled", "orders/updated"}


def compute_signature(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(raw_body: bytes, signature: Optional[str], secret: str) -> None:
    """Raise WebhookAuthenticationError unless ``signature`` matches ``raw_body``."""
    if not secret:
        raise WebhookAuthenticationError("Webhook secret is not configured")
    if not signature:
        raise WebhookAuthenticationError("Missing webhook signature")
    expected = compute_signature(raw_body, secret)
    if not hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("ascii", "ignore")):
        raise WebhookAuthenticationError("Webhook signature mismatch")


def parse_payload(raw_body: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValidationError(f"Webhook body is not valid JSON: {e}")
    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be a JSON object")
    return payload


class WebhookIngestion:

    def __init__(self, repository: ListingRepository, enqueue: Callable[[ReconciliationEvent], Awaitable[int]]):
        self.repository = repository
        self.enqueue = enqueue

    async def ingest(self, topic: str, raw_body: bytes, signature: Optional[str], secret: str) -> Dict[str, Any]:
        verify_signature(raw_body, signature, secret)
        return await self.ingest_verified(topic, raw_body)

    async def ingest_verified(self, topic: str, raw_body: bytes) -> Dict[str, Any]:
        """Normalize and enqueue a body whose signature has already been checked."""
        payload = parse_payload(raw_body)
        events = await self.events_from_order(topic, payload)
        job_ids = [await self.enqueue(event) for event in events]
        logger.info("Webhook %s for order %s: %s event(s) queued", topic, payload.get("id"), len(job_ids))
        return {"topic": topic, "order_id": payload.get("id"), "events": len(job_ids), "job_ids": job_ids}

    async def events_from_order(self, topic: str, payload: Dict[str, Any]) -> List[ReconciliationEvent]:
        order_id = payload.get("id")
        if order_id is None:
            raise ValidationError("Order payload has no id")
        order_id = str(order_id)

        kind = self._event_kind(topic, payload)
        if kind is None:
            logger.info("Webhook %s for order %s needs no reconciliation (financial_status=%s)",
                        topic, order_id, payload.get("financial_status"))
            return []

        observed_at = utc_now()
        events = []
        seen = set()
        for item in payload.get("line_items") or []:
            listing = await self._listing_for_line_item(item)
            if listing is None or listing.marketplace_pid in seen:
                continue
            seen.add(listing.marketplace_pid)
            events.append(ReconciliationEvent(
                kind=kind,
                listing_key=listing.marketplace_pid,
                platform_order_id=order_id,
                observed_at=observed_at,
                source=f"webhook:{topic}",
            ))
        if not events:
            logger.info("Order %s has no line items for tracked listings", order_id)
        return events

    @staticmethod
    def _event_kind(topic: str, payload: Dict[str, Any]) -> Optional[EventKind]:
        topic = (topic or "").strip().lower()
        if topic in CANCEL_TOPICS:
            if topic == "orders/cancelled" or payload.get("cancelled_at"):
                return EventKind.STOREFRONT_ORDER_CANCELLED
            return None
        if topic in SALE_TOPICS:
            if payload.get("cancelled_at"):
                return None
            if (payload.get("financial_status") or "").lower() in SALE_FINANCIAL_STATUSES:
                return EventKind.STOREFRONT_SALE
            return None
        raise ValidationError(f"Unsupported webhook topic {topic!r}")

    async def _listing_for_line_item(self, item: Dict[str, Any]) -> Optional[ListingState]:
        product_id = item.get("product_id")
        if product_id is None:
            return None
        for candidate in (str(product_id), f"gid://shopify/Product/{product_id}"):
            listing = await self.repository.get_by_storefront_id(candidate)
            if listing is not None:
                return listing
        logger.debug("Line item product %s is not linked to a marketplace item", product_id)
        return None
