"""
Core module exports.
"""
from .enums import (
    AvailabilityState,
    SoldFrom,
    EventKind,
    MarketplaceSaleStatus,
    MarketplaceOrderStatus,
    PollTier,
)

from .exceptions import (
    BaseServiceError,
    ConcurrencyConflict,
    DataIntegrityError,
    InvalidTransition,
    ListingNotFoundError,
    PermanentGatewayError,
    TransientGatewayError,
    ValidationError,
)

from .utils import (
    utc_now,
    model_to_schema,
    models_to_schemas,
)
