import asyncio
import logging
import json
from typing import Any, Dict, List, Optional

from app.core.enums import StorefrontStatus
from app.integrations.base import StorefrontGateway, StorefrontListing, StorefrontOrder
from app.integrations.retry import call_with_retry
from app.services.shopify.client import ShopifyGraphQLClient

logger = logging.getLogger(__name__)

METAFIELD_NAMESPACE = "marketplace"


def to_gid(resource: str, identifier: str) -> str:
    """Accept either a bare numeric id or a full gid://shopify/... id."""
    identifier = str(identifier)
    if identifier.startswith("gid://"):
        return identifier
    return f"gid://shopify/{resource}/{identifier}"


def _metafield_input(owner_gid: str, key: str, value: Any) -> Dict[str, Any]:
    if isinstance(value, (dict, list)):
        return {"ownerId": owner_gid, "namespace": METAFIELD_NAMESPACE, "key": key,
                "type": "json", "value": json.dumps(value)}
    if isinstance(value, bool):
        return {"ownerId": owner_gid, "namespace": METAFIELD_NAMESPACE, "key": key,
                "type": "boolean", "value": "true" if value else "false"}
    if isinstance(value, int):
        return {"ownerId": owner_gid, "namespace": METAFIELD_NAMESPACE, "key": key,
                "type": "number_integer", "value": str(value)}
    return {"ownerId": owner_gid, "namespace": METAFIELD_NAMESPACE, "key": key,
            "type": "single_line_text_field", "value": str(value)}


class ShopifyPlatform(StorefrontGateway):
    """
    StorefrontGateway over the synchronous Shopify GraphQL client.
    Each call runs in a worker thread and is retried on transient errors.
    """

    def __init__(self, client: ShopifyGraphQLClient, max_attempts: int = 3,
                 backoff_base: float = 1.0, backoff_max: float = 30.0):
        self.client = client
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

    async def _call(self, description: str, func, *args):
        return await call_with_retry(
            lambda: asyncio.to_thread(func, *args),
            description=description,
            max_attempts=self.max_attempts,
            base_delay=self.backoff_base,
            max_delay=self.backoff_max,
        )

    async def query_listing(self, listing_id: str) -> Optional[StorefrontListing]:
        product = await self._call(f"get_product({listing_id})", self.client.get_product, to_gid("Product", listing_id))
        if product is None:
            return None
        status = product.get("status")
        return StorefrontListing(
            id=product["id"],
            title=product.get("title") or "",
            status=StorefrontStatus(status) if status in StorefrontStatus.__members__ else None,
            tags=product.get("tags") or [],
            inventory_item_id=product.get("inventory_item_id"),
        )

    async def set_listing_status_and_tags(
        self, listing_id: str, status: StorefrontStatus, title: str, tags: List[str]
    ) -> None:
        product_input = {
            "id": to_gid("Product", listing_id),
            "status": status.value,
            "title": title,
            "tags": tags,
        }
        await self._call(f"update_product({listing_id})", self.client.update_product, product_input)
        logger.info(f"Storefront product {listing_id} set to {status.value} with {len(tags)} tags")

    async def set_quantity(self, inventory_item_id: str, location_id: Optional[str], quantity: int) -> None:
        if quantity not in (0, 1):
            raise ValueError(f"Single-unit listings only accept quantity 0 or 1, got {quantity}")
        if not location_id:
            raise ValueError("SHOPIFY_LOCATION_GID is required to set inventory quantities")
        await self._call(
            f"set_quantity({inventory_item_id}={quantity})",
            self.client.set_available_quantity,
            to_gid("InventoryItem", inventory_item_id),
            to_gid("Location", location_id),
            quantity,
        )

    async def query_order(self, order_id: str) -> Optional[StorefrontOrder]:
        order = await self._call(
            f"get_order({order_id})", self.client.get_order, to_gid("Order", order_id), METAFIELD_NAMESPACE
        )
        if order is None:
            return None
        return StorefrontOrder(**order)

    async def annotate_order(self, order_id: str, tags: List[str], metadata: Optional[Dict[str, Any]] = None) -> None:
        order_gid = to_gid("Order", order_id)
        if tags:
            await self._call(f"add_tags({order_id})", self.client.add_tags, order_gid, tags)
        if metadata:
            metafields = [_metafield_input(order_gid, key, value) for key, value in metadata.items()]
            await self._call(f"set_metafields({order_id})", self.client.set_metafields, metafields)
        logger.info(f"Storefront order {order_id} annotated: tags={tags} metadata_keys={list((metadata or {}).keys())}")
