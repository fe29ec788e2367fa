import logging
from datetime import datetime, timedelta
from typing import Optional

from app.core.exceptions import GatewayNotFoundError, ItemUnavailableError, TransientGatewayError, ValidationError
from app.integrations.base import (
    MarketplaceGateway,
    MarketplaceListingDetails,
    MarketplaceOrder,
    MarketplaceOrderPage,
)
from app.integrations.retry import call_with_retry
from app.services.bunjang.client import BunjangClient
from app.services.status_normalizer import extract_price, extract_quantity, normalize_sale_status

logger = logging.getLogger(__name__)

MAX_ORDER_SYNC_WINDOW = timedelta(days=15)


def validate_order_window(start: datetime, end: datetime) -> None:
    """The marketplace order list only accepts ranges of up to 15 days."""
    if end < start:
        raise ValidationError(f"Order sync window ends before it starts ({start} > {end})")
    if end - start > MAX_ORDER_SYNC_WINDOW:
        raise ValidationError(
            f"Order sync window of {(end - start).days} days exceeds the {MAX_ORDER_SYNC_WINDOW.days} day limit"
        )


def _create_is_retryable(error: TransientGatewayError) -> bool:
    # A create that reached the server may have succeeded; only retry when it provably did not
    return error.rate_limited or error.code == "CONNECT"


def _format_marketplace_time(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%S.000Z")


def _parse_marketplace_time(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


class BunjangPlatform(MarketplaceGateway):
    """MarketplaceGateway over the Bunjang API with gateway-level retries."""

    def __init__(self, client: BunjangClient, max_attempts: int = 3,
                 backoff_base: float = 1.0, backoff_max: float = 30.0):
        self.client = client
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

    async def _retrying(self, operation, description: str, retry_if=None):
        return await call_with_retry(
            operation,
            description=description,
            max_attempts=self.max_attempts,
            base_delay=self.backoff_base,
            max_delay=self.backoff_max,
            retry_if=retry_if,
        )

    async def get_listing_details(self, pid: str) -> Optional[MarketplaceListingDetails]:
        try:
            product = await self._retrying(lambda: self.client.get_product(pid), f"get_product({pid})")
        except GatewayNotFoundError:
            logger.info(f"Marketplace product {pid} not found")
            return None
        except ItemUnavailableError as e:
            if e.code == "PRODUCT_NOT_FOUND":
                logger.info(f"Marketplace product {pid} not found ({e.code})")
                return None
            raise

        return MarketplaceListingDetails(
            pid=str(pid),
            status=normalize_sale_status(product),
            price=extract_price(product),
            quantity=extract_quantity(product),
            raw=product,
        )

    async def create_order(self, pid: str, price: int, delivery_price: int = 0) -> str:
        return await self._retrying(
            lambda: self.client.create_order(pid, price, delivery_price),
            f"create_order({pid})",
            retry_if=_create_is_retryable,
        )

    async def confirm_order(self, order_id: str) -> None:
        await self._retrying(lambda: self.client.confirm_purchase(order_id), f"confirm_order({order_id})")

    async def get_orders(self, start: datetime, end: datetime, page: int = 0, size: int = 100) -> MarketplaceOrderPage:
        validate_order_window(start, end)
        response = await self._retrying(
            lambda: self.client.get_orders(
                _format_marketplace_time(start), _format_marketplace_time(end), page=page, size=size
            ),
            f"get_orders(page={page})",
        )

        orders = []
        for order in response.get("data") or []:
            order_id = order.get("id")
            for item in order.get("orderItems") or []:
                product = item.get("product") or {}
                if order_id is None or product.get("id") is None or not item.get("status"):
                    logger.warning(f"Skipping malformed marketplace order item in order {order_id}")
                    continue
                orders.append(
                    MarketplaceOrder(
                        order_id=str(order_id),
                        pid=str(product["id"]),
                        status=str(item["status"]),
                        updated_at=_parse_marketplace_time(item.get("statusUpdatedAt") or order.get("updatedAt")),
                    )
                )
        return MarketplaceOrderPage(
            orders=orders,
            page=page,
            total_pages=int(response.get("totalPages") or 1),
        )

    async def get_account_balance(self) -> int:
        return await self._retrying(self.client.get_point_balance, "get_point_balance")
