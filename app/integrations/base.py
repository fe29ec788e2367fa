from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, List
from datetime import datetime
from pydantic import BaseModel, Field

from app.core.enums import MarketplaceSaleStatus, StorefrontStatus


class StorefrontListing(BaseModel):
    id: str
    title: str = ""
    status: Optional[StorefrontStatus] = None
    tags: List[str] = Field(default_factory=list)
    inventory_item_id: Optional[str] = None


class StorefrontOrder(BaseModel):
    id: str
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    financial_status: Optional[str] = None
    cancelled_at: Optional[str] = None


class MarketplaceListingDetails(BaseModel):
    """Live marketplace view of one item, status already normalized."""
    pid: str
    status: MarketplaceSaleStatus
    price: Optional[int] = None
    quantity: Optional[int] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class MarketplaceOrder(BaseModel):
    order_id: str
    pid: str
    status: str
    updated_at: Optional[datetime] = None


class MarketplaceOrderPage(BaseModel):
    orders: List[MarketplaceOrder] = Field(default_factory=list)
    page: int = 0
    total_pages: int = 1


class StorefrontGateway(ABC):
    """Operations the reconciliation engine needs from the storefront."""

    @abstractmethod
    async def query_listing(self, listing_id: str) -> Optional[StorefrontListing]:
        pass

    @abstractmethod
    async def set_listing_status_and_tags(
        self, listing_id: str, status: StorefrontStatus, title: str, tags: List[str]
    ) -> None:
        """Replace status, title and the full tag list of a product"""
        pass

    @abstractmethod
    async def set_quantity(self, inventory_item_id: str, location_id: Optional[str], quantity: int) -> None:
        """Set absolute available quantity (0 or 1). Idempotent."""
        pass

    @abstractmethod
    async def query_order(self, order_id: str) -> Optional[StorefrontOrder]:
        pass

    @abstractmethod
    async def annotate_order(self, order_id: str, tags: List[str], metadata: Optional[Dict[str, Any]] = None) -> None:
        """Add tags and upsert metadata fields on an order"""
        pass


class MarketplaceGateway(ABC):
    """Operations the reconciliation engine needs from the marketplace."""

    @abstractmethod
    async def get_listing_details(self, pid: str) -> Optional[MarketplaceListingDetails]:
        """Live details, or None when the marketplace reports the item not found"""
        pass

    @abstractmethod
    async def create_order(self, pid: str, price: int, delivery_price: int = 0) -> str:
        pass

    @abstractmethod
    async def confirm_order(self, order_id: str) -> None:
        pass

    @abstractmethod
    async def get_orders(self, start: datetime, end: datetime, page: int = 0, size: int = 100) -> MarketplaceOrderPage:
        pass

    @abstractmethod
    async def get_account_balance(self) -> int:
        pass
