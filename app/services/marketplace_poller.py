# app/services/marketplace_poller.py
"""
Scheduled marketplace polling.

The marketplace has no webhooks, so sales made there, and status changes
of the orders we placed, are discovered by polling. Polls never change
listing state themselves; they enqueue canonical events for the engine.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from app.core.enums import (
    AvailabilityState,
    EventKind,
    MarketplaceOrderStatus,
    MarketplaceSaleStatus,
    PollTier,
)
from app.core.exceptions import GatewayError
from app.core.utils import utc_now
from app.integrations.base import MarketplaceGateway, MarketplaceOrder
from app.integrations.events import ReconciliationEvent
from app.integrations.platforms.bunjang import validate_order_window
from app.schemas.listing import VOID_PREFIX, ListingState
from app.services.listing_store import ListingRepository
from app.services.remote_order_workflow import is_order_unconfirmed

logger = logging.getLogger(__name__)

TIER_ORDER_WINDOWS = {
    PollTier.FREQUENT: timedelta(minutes=30),
    PollTier.HOURLY: timedelta(hours=2),
    PollTier.DAILY: timedelta(hours=24),
}

Enqueue = Callable[[ReconciliationEvent], Awaitable[int]]


class MarketplacePoller:

    def __init__(
        self,
        repository: ListingRepository,
        marketplace: MarketplaceGateway,
        record_observation: Callable,
        enqueue: Enqueue,
        page_size: int = 100,
    ):
        self.repository = repository
        self.marketplace = marketplace
        self.record_observation = record_observation
        self.enqueue = enqueue
        self.page_size = page_size
        # order_id:pid -> (status, seen at); entries outlive the widest tier window only
        self._last_order_status: Dict[str, Tuple[str, datetime]] = {}

    async def run_tier(self, tier: PollTier, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utc_now()
        listings = await self.poll_listing_statuses(tier)
        orders = await self.sync_remote_order_statuses(now - TIER_ORDER_WINDOWS[tier], now)
        return {"tier": tier.value, "listings": listings, "orders": orders}

    async def sync_remote_order_statuses(self, start: datetime, end: datetime) -> Dict[str, int]:
        """
        Enqueue a MarketplaceOrderStatusChanged event for every order item
        whose status changed in [start, end]. Raises ValidationError for a
        window over 15 days before calling the marketplace.
        """
        validate_order_window(start, end)
        self._evict_seen_statuses()

        counts = {"orders": 0, "enqueued": 0, "skipped": 0, "recovered": 0}
        page = 0
        while True:
            result = await self.marketplace.get_orders(start, end, page=page, size=self.page_size)
            for order in result.orders:
                counts["orders"] += 1
                key = f"{order.order_id}:{order.pid}"
                seen = self._last_order_status.get(key)
                if seen and seen[0] == order.status:
                    counts["skipped"] += 1
                    continue
                listing = await self.repository.get_by_marketplace_id(order.pid)
                if listing is None:
                    logger.debug("Marketplace order %s is for untracked item %s", order.order_id, order.pid)
                    counts["skipped"] += 1
                    continue
                if self._is_unrecorded_purchase(listing, order):
                    # Our create went through but its response was lost
                    logger.warning("Marketplace order %s found for pending listing %s; recovering",
                                   order.order_id, order.pid)
                    await self.enqueue(ReconciliationEvent(
                        kind=EventKind.REMOTE_ORDER_PLACED,
                        listing_key=order.pid,
                        platform_order_id=order.order_id,
                        source="order_sync",
                    ))
                    counts["recovered"] += 1
                await self.enqueue(ReconciliationEvent(
                    kind=EventKind.MARKETPLACE_ORDER_STATUS_CHANGED,
                    listing_key=order.pid,
                    platform_order_id=order.order_id,
                    order_status=order.status,
                    observed_at=order.updated_at or utc_now(),
                    source="order_sync",
                ))
                self._last_order_status[key] = (order.status, utc_now())
                counts["enqueued"] += 1
            page += 1
            if page >= result.total_pages or not result.orders:
                break

        logger.info("Order status sync %s..%s: %s", start.isoformat(), end.isoformat(), counts)
        return counts

    @staticmethod
    def _is_unrecorded_purchase(listing: ListingState, order: MarketplaceOrder) -> bool:
        """An order on our account for a listing still waiting on its marketplace order."""
        if listing.availability is not AvailabilityState.SOLD_PENDING_REMOTE:
            return False
        if listing.active_remote_order_ids() or order.order_id in listing.remote_order_ids \
                or f"{VOID_PREFIX}{order.order_id}" in listing.remote_order_ids:
            return False
        status = order.status.upper()
        return not (status in MarketplaceOrderStatus.__members__ and MarketplaceOrderStatus(status).releases_item)

    def _evict_seen_statuses(self) -> None:
        cutoff = utc_now() - TIER_ORDER_WINDOWS[PollTier.DAILY]
        stale = [key for key, (_, seen_at) in self._last_order_status.items() if seen_at < cutoff]
        for key in stale:
            del self._last_order_status[key]

    async def poll_listing_statuses(self, tier: PollTier) -> Dict[str, int]:
        listings = await self.repository.list_for_polling(tier)
        counts = {"checked": 0, "sold": 0, "relisted": 0, "resumed": 0, "errors": 0}

        for listing in listings:
            pid = listing.marketplace_pid
            try:
                details = await self.marketplace.get_listing_details(pid)
            except GatewayError as e:
                logger.warning("Poll of marketplace item %s failed: %s", pid, e)
                counts["errors"] += 1
                continue
            counts["checked"] += 1

            status = await self.record_observation(pid, details)
            state = listing.availability

            if status is MarketplaceSaleStatus.SOLD and is_order_unconfirmed(listing):
                # Likely our own purchase; the order sync or an operator resolves it
                logger.info("Item %s sold while its order is unconfirmed; left on hold", pid)
            elif status is MarketplaceSaleStatus.SOLD and (state.is_sellable or state is AvailabilityState.SOLD_PENDING_REMOTE):
                await self.enqueue(ReconciliationEvent(
                    kind=EventKind.MARKETPLACE_SALE_DETECTED,
                    listing_key=pid,
                    source=f"poll:{tier.value}",
                ))
                counts["sold"] += 1
            elif status is MarketplaceSaleStatus.SELLING and state is AvailabilityState.SOLD_REMOTE_ONLY:
                await self.enqueue(ReconciliationEvent(
                    kind=EventKind.MARKETPLACE_ORDER_STATUS_CHANGED,
                    listing_key=pid,
                    order_status=MarketplaceOrderStatus.RELISTED.value,
                    source=f"poll:{tier.value}",
                ))
                counts["relisted"] += 1
            elif status is MarketplaceSaleStatus.SELLING and state is AvailabilityState.SOLD_PENDING_REMOTE:
                # Held placement: try again now the item is confirmed for sale
                await self.enqueue(ReconciliationEvent(
                    kind=EventKind.STOREFRONT_SALE,
                    listing_key=pid,
                    platform_order_id=listing.storefront_order_id,
                    source=f"poll:{tier.value}",
                ))
                counts["resumed"] += 1

        logger.info("Listing poll (%s): %s", tier.value, counts)
        return counts
