class BaseServiceError(Exception):
    """Base exception for all service-related errors."""
    pass


class ValidationError(BaseServiceError):
    """Raised when data validation fails."""
    pass


class ListingNotFoundError(BaseServiceError):
    """Raised when no listing exists for a marketplace or storefront id."""
    pass


class DataIntegrityError(BaseServiceError):
    """Raised when platform data is missing a field the workflow depends on."""
    pass


class ConcurrencyConflict(BaseServiceError):
    """Raised when a listing changed between read and compare-and-swap write."""

    def __init__(self, key: str, expected_version: int):
        self.key = key
        self.expected_version = expected_version
        super().__init__(f"Listing {key} no longer at version {expected_version}")


class InvalidTransition(BaseServiceError):
    """Raised when an event does not apply to the listing's current state."""

    def __init__(self, key: str, state, event_kind):
        self.key = key
        self.state = state
        self.event_kind = event_kind
        super().__init__(f"Event {getattr(event_kind, 'value', event_kind)} not valid for listing {key} in state {getattr(state, 'value', state)}")


class WebhookAuthenticationError(BaseServiceError):
    """Raised when a webhook signature is missing or does not match."""
    pass


class PlatformServiceError(BaseServiceError):
    """Base exception for platform service errors."""
    pass


class GatewayError(PlatformServiceError):
    """Base exception for storefront/marketplace gateway failures."""

    def __init__(self, message: str, status_code: int = None, code: str = None):
        self.status_code = status_code
        self.code = code
        super().__init__(message)


class TransientGatewayError(GatewayError):
    """Timeout, connection failure, 5xx or rate limit. Safe to retry."""

    def __init__(self, message: str, status_code: int = None, code: str = None, rate_limited: bool = False):
        self.rate_limited = rate_limited
        super().__init__(message, status_code=status_code, code=code)


class PermanentGatewayError(GatewayError):
    """Not-found, already-sold, bad request. Never retried."""
    pass


class GatewayNotFoundError(PermanentGatewayError):
    """Raised when the platform reports the resource does not exist."""
    pass


class ItemUnavailableError(PermanentGatewayError):
    """Raised when the marketplace refuses an order because the item is sold or on hold."""
    pass


class PriceChangedError(PermanentGatewayError):
    """Raised when the marketplace rejects an order price."""
    pass


class GatewayAuthError(PermanentGatewayError):
    """Raised on authentication or authorization failures."""
    pass


class InsufficientFundsError(PermanentGatewayError):
    """Raised when the purchasing account cannot cover an order."""
    pass


class CircuitOpenError(PlatformServiceError):
    """Raised when marketplace order placement is suspended."""
    pass


class StorefrontGraphQLError(GatewayError):
    """Raised when a storefront GraphQL response carries errors."""

    def __init__(self, errors):
        self.errors = errors
        message = "GraphQL query failed with errors:\n"
        for error in errors:
            msg = error.get('message', 'Unknown error')
            path = error.get('path', [])
            message += f"- Message: {msg}, Path: {path}\n"
        super().__init__(message)
