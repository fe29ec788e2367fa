"""
Storefront side effects of reconciliation transitions.

Delisting and restoring are written as absolute states (status, title,
full tag list, quantity 0/1), so repeating any of them is harmless.
"""

import logging
from typing import Any, Dict, List, Optional

from app.core.enums import MarketplaceOrderStatus, StorefrontStatus
from app.core.utils import strip_title_prefixes, utc_now
from app.integrations.base import StorefrontGateway
from app.schemas.listing import ListingState

logger = logging.getLogger(__name__)

SOLD_BOTH_PREFIX = "[SOLD OUT]"
SOLD_REMOTE_ONLY_PREFIX = "[Sold on Marketplace]"
TITLE_PREFIXES = (SOLD_BOTH_PREFIX, SOLD_REMOTE_ONLY_PREFIX)

SOLD_OUT_TAG = "sold_out"
SOLD_BOTH_TAG = "sold_both_platforms"
SOLD_REMOTE_ONLY_TAG = "sold_marketplace_only"
MARKER_TAGS = {SOLD_OUT_TAG, SOLD_BOTH_TAG, SOLD_REMOTE_ONLY_TAG}

MANUAL_REFUND_TAG = "ManualRefundRequired"
REMOTE_REFUNDED_TAG = "RemoteOrderRefunded"


def not_available_code(pid: str) -> str:
    return f"PID-{pid}-NotAvailable"


def price_changed_code(pid: str) -> str:
    return f"PID-{pid}-PriceChanged"


def _merge_tags(existing: List[str], remove: set, add: List[str]) -> List[str]:
    tags = [tag for tag in existing if tag not in remove]
    for tag in add:
        if tag not in tags:
            tags.append(tag)
    return tags


class StorefrontSync:

    def __init__(self, gateway: StorefrontGateway, location_id: Optional[str], order_prefix: str = "MarketplaceOrder-"):
        self.gateway = gateway
        self.location_id = location_id
        self.order_prefix = order_prefix

    async def _current_tags_and_item(self, listing: ListingState):
        current = await self.gateway.query_listing(listing.storefront_id)
        tags = current.tags if current else []
        inventory_item_id = listing.storefront_inventory_item_id or (current.inventory_item_id if current else None)
        return tags, inventory_item_id

    async def delist(self, listing: ListingState, sold_both: bool) -> bool:
        """Draft the product, mark the title/tags and zero the quantity."""
        if not listing.storefront_id:
            logger.warning("Listing %s has no storefront product; nothing to delist", listing.marketplace_pid)
            return False

        tags, inventory_item_id = await self._current_tags_and_item(listing)
        if sold_both:
            prefix, marker_tags = SOLD_BOTH_PREFIX, [SOLD_OUT_TAG, SOLD_BOTH_TAG]
        else:
            prefix, marker_tags = SOLD_REMOTE_ONLY_PREFIX, [SOLD_OUT_TAG, SOLD_REMOTE_ONLY_TAG]

        title = f"{prefix} {strip_title_prefixes(listing.title, TITLE_PREFIXES)}"
        await self.gateway.set_listing_status_and_tags(
            listing.storefront_id,
            StorefrontStatus.DRAFT,
            title,
            _merge_tags(tags, MARKER_TAGS, marker_tags),
        )
        if inventory_item_id:
            await self.gateway.set_quantity(inventory_item_id, self.location_id, 0)
        else:
            logger.warning("Listing %s has no inventory item; quantity not zeroed", listing.marketplace_pid)
        logger.info("Delisted storefront product for %s (%s)", listing.marketplace_pid,
                    "sold on both" if sold_both else "sold on marketplace")
        return True

    async def restore(self, listing: ListingState) -> bool:
        """Re-activate the product with its clean title and quantity 1."""
        if not listing.storefront_id:
            logger.warning("Listing %s has no storefront product; nothing to restore", listing.marketplace_pid)
            return False

        tags, inventory_item_id = await self._current_tags_and_item(listing)
        await self.gateway.set_listing_status_and_tags(
            listing.storefront_id,
            StorefrontStatus.ACTIVE,
            strip_title_prefixes(listing.title, TITLE_PREFIXES),
            _merge_tags(tags, MARKER_TAGS, []),
        )
        if inventory_item_id:
            await self.gateway.set_quantity(inventory_item_id, self.location_id, 1)
        else:
            logger.warning("Listing %s has no inventory item; quantity not restored", listing.marketplace_pid)
        logger.info("Restored storefront product for %s", listing.marketplace_pid)
        return True

    # Order annotations

    async def recorded_remote_order_id(self, order_id: str) -> Optional[str]:
        """Remote order id already written to the storefront order, if any."""
        order = await self.gateway.query_order(order_id)
        if order is None:
            return None
        order_ids = order.metadata.get("order_ids")
        if isinstance(order_ids, list) and order_ids:
            return str(order_ids[-1])
        for tag in order.tags:
            if tag.startswith(self.order_prefix):
                return tag[len(self.order_prefix):]
        return None

    async def annotate_remote_order(self, order_id: str, pid: str, remote_order_id: str) -> None:
        await self.gateway.annotate_order(
            order_id,
            [f"{self.order_prefix}{remote_order_id}", f"PID-{pid}-Success"],
            {
                "order_ids": [remote_order_id],
                "order_created_at": utc_now().isoformat(),
                "order_count": 1,
            },
        )

    async def flag_for_refund(self, order_id: str, error_code: str) -> None:
        await self.gateway.annotate_order(
            order_id,
            [f"Error:{error_code}", MANUAL_REFUND_TAG],
            {"error_code": error_code},
        )

    async def annotate_hold(self, order_id: str, error_code: str, extra_tags: Optional[List[str]] = None) -> None:
        await self.gateway.annotate_order(
            order_id,
            [f"Error:{error_code}"] + list(extra_tags or []),
            {"error_code": error_code},
        )

    async def annotate_remote_status(self, order_id: str, remote_order_id: str, status: str) -> None:
        tags = [f"MarketplaceStatus-{status}"]
        if status in MarketplaceOrderStatus.__members__ and MarketplaceOrderStatus(status).releases_item:
            tags.append(REMOTE_REFUNDED_TAG)
        metadata: Dict[str, Any] = {
            "last_status": status,
            "last_status_sync": utc_now().isoformat(),
        }
        if status == MarketplaceOrderStatus.PURCHASE_CONFIRM.value:
            metadata["purchase_confirmed_at"] = utc_now().isoformat()
        await self.gateway.annotate_order(order_id, tags, metadata)
        logger.info("Storefront order %s annotated with marketplace order %s status %s",
                    order_id, remote_order_id, status)
