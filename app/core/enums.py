"""
Shared enums and constants used across the application.
"""

from enum import Enum


class AvailabilityState(str, Enum):
    """Reconciliation state of a single-unit listing"""
    ACTIVE = "ACTIVE"
    SOLD_PENDING_REMOTE = "SOLD_PENDING_REMOTE"
    SOLD_BOTH = "SOLD_BOTH"
    SOLD_REMOTE_ONLY = "SOLD_REMOTE_ONLY"
    RESTORED = "RESTORED"

    @property
    def is_sellable(self) -> bool:
        return self in (AvailabilityState.ACTIVE, AvailabilityState.RESTORED)


class SoldFrom(str, Enum):
    NONE = "none"
    STOREFRONT = "storefront"
    MARKETPLACE = "marketplace"
    BOTH = "both"


class EventKind(str, Enum):
    """Canonical reconciliation events carried by the job queue"""
    STOREFRONT_SALE = "StorefrontSale"
    MARKETPLACE_SALE_DETECTED = "MarketplaceSaleDetected"
    STOREFRONT_ORDER_CANCELLED = "StorefrontOrderCancelled"
    MARKETPLACE_ORDER_STATUS_CHANGED = "MarketplaceOrderStatusChanged"
    REMOTE_ORDER_PLACED = "RemoteOrderPlaced"


class MarketplaceSaleStatus(str, Enum):
    """Normalized 'is it still for sale' answer from the marketplace"""
    SELLING = "SELLING"
    SOLD = "SOLD"
    UNKNOWN = "UNKNOWN"


class MarketplaceOrderStatus(str, Enum):
    """Order-item statuses reported by the marketplace order list"""
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
    SHIP_READY = "SHIP_READY"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERY_COMPLETED = "DELIVERY_COMPLETED"
    PURCHASE_CONFIRM = "PURCHASE_CONFIRM"
    CANCEL_REQUESTED_BEFORE_SHIPPING = "CANCEL_REQUESTED_BEFORE_SHIPPING"
    RETURN_REQUESTED = "RETURN_REQUESTED"
    RETURNED = "RETURNED"
    REFUNDED = "REFUNDED"
    RELISTED = "RELISTED"

    @property
    def releases_item(self) -> bool:
        return self in (
            MarketplaceOrderStatus.REFUNDED,
            MarketplaceOrderStatus.RETURNED,
            MarketplaceOrderStatus.RELISTED,
        )


class StorefrontStatus(str, Enum):
    ACTIVE = "ACTIVE"
    DRAFT = "DRAFT"
    ARCHIVED = "ARCHIVED"


class PlacementOutcome(str, Enum):
    """Result of the remote order placement workflow"""
    PLACED = "PLACED"
    CONFLICT = "CONFLICT"
    HELD = "HELD"


class JobStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PARKED = "parked"


class PollTier(str, Enum):
    FREQUENT = "frequent"
    HOURLY = "hourly"
    DAILY = "daily"
