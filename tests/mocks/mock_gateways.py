from datetime import datetime
from typing import Any, Dict, List, Optional

from app.core.config import Settings
from app.core.enums import MarketplaceSaleStatus, StorefrontStatus
from app.core.exceptions import TransientGatewayError, ValidationError
from app.integrations.base import (
    MarketplaceGateway,
    MarketplaceListingDetails,
    MarketplaceOrderPage,
    StorefrontGateway,
    StorefrontListing,
    StorefrontOrder,
)
from app.services.notification_service import OperatorAlertService


class FakeStorefront(StorefrontGateway):
    """In-memory storefront that records every call."""

    def __init__(self):
        self.products: Dict[str, StorefrontListing] = {}
        self.quantities: Dict[str, int] = {}
        self.orders: Dict[str, StorefrontOrder] = {}
        self.calls: List[tuple] = []
        self.should_fail = False  # Toggle to test error scenarios
        self.failing_operations: set = set()

    def add_product(self, product_id: str, title: str, inventory_item_id: str, quantity: int = 1, tags=None):
        self.products[product_id] = StorefrontListing(
            id=product_id,
            title=title,
            status=StorefrontStatus.ACTIVE,
            tags=list(tags or []),
            inventory_item_id=inventory_item_id,
        )
        self.quantities[inventory_item_id] = quantity

    def add_order(self, order_id: str, tags=None, metadata=None):
        self.orders[order_id] = StorefrontOrder(id=order_id, tags=list(tags or []), metadata=dict(metadata or {}))

    def _record(self, *call):
        self.calls.append(call)
        if self.should_fail or call[0] in self.failing_operations:
            raise TransientGatewayError("storefront unavailable", status_code=503)

    async def query_listing(self, listing_id: str) -> Optional[StorefrontListing]:
        self._record("query_listing", listing_id)
        return self.products.get(listing_id)

    async def set_listing_status_and_tags(self, listing_id, status, title, tags) -> None:
        self._record("set_listing_status_and_tags", listing_id, status, title, list(tags))
        product = self.products.get(listing_id) or StorefrontListing(id=listing_id)
        self.products[listing_id] = product.model_copy(update={"status": status, "title": title, "tags": list(tags)})

    async def set_quantity(self, inventory_item_id, location_id, quantity) -> None:
        self._record("set_quantity", inventory_item_id, quantity)
        if quantity not in (0, 1):
            raise ValidationError(f"quantity must be 0 or 1, got {quantity}")
        self.quantities[inventory_item_id] = quantity

    async def query_order(self, order_id: str) -> Optional[StorefrontOrder]:
        self._record("query_order", order_id)
        return self.orders.get(order_id)

    async def annotate_order(self, order_id, tags, metadata=None) -> None:
        self._record("annotate_order", order_id, list(tags), dict(metadata or {}))
        order = self.orders.get(order_id) or StorefrontOrder(id=order_id)
        merged = list(order.tags) + [tag for tag in tags if tag not in order.tags]
        self.orders[order_id] = order.model_copy(update={"tags": merged, "metadata": {**order.metadata, **(metadata or {})}})

    def calls_named(self, name: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == name]


class FakeMarketplace(MarketplaceGateway):
    """In-memory marketplace. Created orders get sequential ids starting at 999."""

    def __init__(self):
        self.items: Dict[str, MarketplaceListingDetails] = {}
        self.created_orders: List[Dict[str, Any]] = []
        self.confirmed_orders: List[str] = []
        self.order_pages: List[MarketplaceOrderPage] = []
        self.get_orders_calls: List[tuple] = []
        self.details_calls: List[str] = []
        self.balance = 5_000_000
        self.balance_calls = 0
        self.next_order_id = 999

        self.details_error: Optional[Exception] = None
        self.create_error: Optional[Exception] = None
        self.confirm_error: Optional[Exception] = None
        self.balance_error: Optional[Exception] = None

    def set_item(self, pid: str, status=MarketplaceSaleStatus.SELLING, price: Optional[int] = 50000, quantity: int = 1):
        self.items[pid] = MarketplaceListingDetails(pid=pid, status=status, price=price, quantity=quantity)

    def remove_item(self, pid: str):
        self.items.pop(pid, None)

    async def get_listing_details(self, pid: str) -> Optional[MarketplaceListingDetails]:
        self.details_calls.append(pid)
        if self.details_error:
            raise self.details_error
        return self.items.get(pid)

    async def create_order(self, pid: str, price: int, delivery_price: int = 0) -> str:
        self.created_orders.append({"pid": pid, "price": price, "delivery_price": delivery_price})
        if self.create_error:
            raise self.create_error
        order_id = str(self.next_order_id)
        self.next_order_id += 1
        if pid in self.items:
            self.items[pid] = self.items[pid].model_copy(update={"status": MarketplaceSaleStatus.SOLD, "quantity": 0})
        return order_id

    async def confirm_order(self, order_id: str) -> None:
        if self.confirm_error:
            raise self.confirm_error
        self.confirmed_orders.append(order_id)

    async def get_orders(self, start: datetime, end: datetime, page: int = 0, size: int = 100) -> MarketplaceOrderPage:
        self.get_orders_calls.append((start, end, page, size))
        if page < len(self.order_pages):
            return self.order_pages[page]
        return MarketplaceOrderPage(orders=[], page=page, total_pages=max(len(self.order_pages), 1))

    async def get_account_balance(self) -> int:
        self.balance_calls += 1
        if self.balance_error:
            raise self.balance_error
        return self.balance


class RecordingAlerts(OperatorAlertService):
    """Alert service that keeps alerts in memory instead of emailing them."""

    def __init__(self, settings: Settings):
        super().__init__(settings)
        self.sent: List[Dict[str, Any]] = []

    async def send_alert(self, subject, lines, *, urgent=False, recipients=None) -> bool:
        self.sent.append({"subject": subject, "lines": list(lines), "urgent": urgent})
        return False

    def subjects(self) -> List[str]:
        return [alert["subject"] for alert in self.sent]
