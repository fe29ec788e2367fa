# app/services/remote_order_workflow.py
"""
Mirrors a storefront sale onto the marketplace.

Given a listing in SOLD_PENDING_REMOTE, verify the item is still for sale
at an acceptable price, buy it, record the marketplace order id on the
storefront order and confirm the purchase. The workflow never writes
listing state itself; it returns a PlacementResult and the engine decides
the transition.
"""

import asyncio
import logging
from typing import Optional

from pydantic import BaseModel

from app.core.enums import MarketplaceSaleStatus, PlacementOutcome
from app.core.exceptions import (
    CircuitOpenError,
    DataIntegrityError,
    GatewayAuthError,
    GatewayError,
    GatewayNotFoundError,
    InsufficientFundsError,
    ItemUnavailableError,
    PermanentGatewayError,
    PriceChangedError,
    TransientGatewayError,
)
from app.integrations.base import MarketplaceGateway, MarketplaceListingDetails
from app.integrations.circuit_breaker import MarketplaceCircuitBreaker
from app.schemas.listing import ListingState
from app.services.notification_service import OperatorAlertService
from app.services.storefront_sync import StorefrontSync, not_available_code, price_changed_code

logger = logging.getLogger(__name__)

CIRCUIT_OPEN_CODE = "CircuitOpen"
URGENT_FUNDS_TAG = "URGENT-InsufficientFunds"
URGENT_AUTH_TAG = "URGENT-AuthenticationError"
LOW_BALANCE_TAG = "LowBalance"
UNCONFIRMED_SUFFIX = "-OrderUnconfirmed"


def order_unconfirmed_code(pid: str) -> str:
    return f"PID-{pid}{UNCONFIRMED_SUFFIX}"


def is_order_unconfirmed(listing: ListingState) -> bool:
    """True while a create timed out and the marketplace order may exist."""
    return bool(listing.last_error_code and listing.last_error_code.endswith(UNCONFIRMED_SUFFIX))


class PlacementResult(BaseModel):
    outcome: PlacementOutcome
    remote_order_id: Optional[str] = None
    error_code: Optional[str] = None
    confirmed: bool = False
    recovered: bool = False
    urgent_tag: Optional[str] = None
    detail: Optional[str] = None

    @classmethod
    def placed(cls, remote_order_id: str, confirmed: bool, error_code: Optional[str] = None, recovered: bool = False):
        return cls(outcome=PlacementOutcome.PLACED, remote_order_id=remote_order_id,
                   confirmed=confirmed, error_code=error_code, recovered=recovered)

    @classmethod
    def conflict(cls, error_code: str, detail: str):
        return cls(outcome=PlacementOutcome.CONFLICT, error_code=error_code, detail=detail)

    @classmethod
    def held(cls, error_code: str, detail: str, urgent_tag: Optional[str] = None):
        return cls(outcome=PlacementOutcome.HELD, error_code=error_code, detail=detail, urgent_tag=urgent_tag)


def price_within_tolerance(expected: Optional[int], live: int, tolerance_percent: float) -> bool:
    """A cheaper live price always passes; a dearer one must stay within the tolerance."""
    if expected is None or expected <= 0 or live <= expected:
        return True
    return (live - expected) * 100 <= expected * tolerance_percent


class RemoteOrderWorkflow:

    def __init__(
        self,
        marketplace: MarketplaceGateway,
        storefront: StorefrontSync,
        circuit: MarketplaceCircuitBreaker,
        alerts: OperatorAlertService,
        price_drift_tolerance_percent: float = 5.0,
        low_balance_threshold: int = 1000000,
    ):
        self.marketplace = marketplace
        self.storefront = storefront
        self.circuit = circuit
        self.alerts = alerts
        self.price_drift_tolerance_percent = price_drift_tolerance_percent
        self.low_balance_threshold = low_balance_threshold

    async def place(self, listing: ListingState) -> PlacementResult:
        pid = listing.marketplace_pid
        order_id = listing.storefront_order_id

        try:
            await self._ensure_circuit_closed(pid)
        except CircuitOpenError as e:
            return PlacementResult.held(CIRCUIT_OPEN_CODE, str(e))

        # A previous attempt may have bought the item and crashed before saving it
        if order_id:
            existing = await self.storefront.recorded_remote_order_id(order_id)
            if existing:
                logger.info("Remote order %s already recorded for %s on order %s", existing, pid, order_id)
                return PlacementResult.placed(existing, confirmed=True, recovered=True)

        try:
            details = await self.marketplace.get_listing_details(pid)
        except GatewayAuthError as e:
            self.circuit.trip(f"authentication failure: {e}")
            await self.alerts.alert_circuit_open(f"Marketplace authentication failed: {e}", pid)
            return PlacementResult.held(URGENT_AUTH_TAG, str(e), urgent_tag=URGENT_AUTH_TAG)
        except (ItemUnavailableError, GatewayNotFoundError) as e:
            return self._unavailable(listing, str(e))
        except PermanentGatewayError as e:
            return PlacementResult.held(f"PID-{pid}-LookupRejected", str(e))
        except TransientGatewayError as e:
            # Gateway retries are already spent
            return PlacementResult.held(f"PID-{pid}-LookupFailed", str(e))
        if details is None:
            return self._unavailable(listing, "item not found on marketplace")
        if details.status is MarketplaceSaleStatus.SOLD or (details.quantity is not None and details.quantity < 1):
            return self._unavailable(listing, f"marketplace status {details.status.value}")
        if details.status is MarketplaceSaleStatus.UNKNOWN:
            return PlacementResult.held(f"PID-{pid}-StatusUnknown", "marketplace status could not be determined")

        try:
            live_price = self._live_price(details)
        except DataIntegrityError as e:
            return PlacementResult.held(f"PID-{pid}-MissingPrice", str(e))

        if not price_within_tolerance(listing.original_price_minor, live_price, self.price_drift_tolerance_percent):
            return PlacementResult.held(
                price_changed_code(pid),
                f"live price {live_price} exceeds expected {listing.original_price_minor} "
                f"by more than {self.price_drift_tolerance_percent}%",
            )

        try:
            remote_order_id = await self._create_order(pid, live_price)
        except InsufficientFundsError as e:
            self.circuit.trip(f"insufficient funds: {e}")
            await self.alerts.alert_circuit_open(f"Insufficient funds buying {pid}: {e}", pid)
            return PlacementResult.held(URGENT_FUNDS_TAG, str(e), urgent_tag=URGENT_FUNDS_TAG)
        except GatewayAuthError as e:
            self.circuit.trip(f"authentication failure: {e}")
            await self.alerts.alert_circuit_open(f"Marketplace authentication failed: {e}", pid)
            return PlacementResult.held(URGENT_AUTH_TAG, str(e), urgent_tag=URGENT_AUTH_TAG)
        except PriceChangedError as e:
            return PlacementResult.held(price_changed_code(pid), str(e))
        except (ItemUnavailableError, GatewayNotFoundError) as e:
            return self._unavailable(listing, str(e))
        except TransientGatewayError as e:
            # The order may or may not exist; a human must check before anyone retries
            return PlacementResult.held(order_unconfirmed_code(pid), str(e))
        except PermanentGatewayError as e:
            return PlacementResult.held(f"PID-{pid}-OrderRejected", str(e))

        logger.info("Marketplace order %s placed for %s at %s", remote_order_id, pid, live_price)

        if order_id:
            try:
                await self.storefront.annotate_remote_order(order_id, pid, remote_order_id)
            except GatewayError as e:
                logger.error("Could not record marketplace order %s on storefront order %s: %s",
                             remote_order_id, order_id, e)

        confirmed = True
        error_code = None
        try:
            await self.marketplace.confirm_order(remote_order_id)
        except GatewayError as e:
            logger.error("Marketplace order %s created but confirmation failed: %s", remote_order_id, e)
            confirmed = False
            error_code = f"PID-{pid}-ConfirmFailed"

        await self._check_balance(order_id)
        return PlacementResult.placed(remote_order_id, confirmed=confirmed, error_code=error_code)

    @staticmethod
    def _unavailable(listing: ListingState, detail: str) -> PlacementResult:
        """
        The item can no longer be bought. After a timed-out create the
        buyer may well be us, so the hold stays for an operator instead
        of refunding the storefront customer.
        """
        pid = listing.marketplace_pid
        if is_order_unconfirmed(listing):
            logger.warning("Item %s unavailable while our order is unconfirmed: %s", pid, detail)
            return PlacementResult.held(
                order_unconfirmed_code(pid),
                f"{detail}; marketplace order may exist, check before refunding",
            )
        return PlacementResult.conflict(not_available_code(pid), detail)

    @staticmethod
    def _live_price(details: MarketplaceListingDetails) -> int:
        if details.price is None or details.price <= 0:
            raise DataIntegrityError(f"Marketplace item {details.pid} has no usable price")
        return details.price

    async def _create_order(self, pid: str, price: int) -> str:
        # Once sent, a create must run to completion even if the caller is cancelled
        return await asyncio.shield(self.marketplace.create_order(pid, price, delivery_price=0))

    async def _ensure_circuit_closed(self, pid: str) -> None:
        if self.circuit.is_open and not await self._probe_circuit(pid):
            raise CircuitOpenError(f"circuit open: {self.circuit.reason}")

    async def _probe_circuit(self, pid: str) -> bool:
        """Try to close the circuit with a cheap authenticated call. True if closed."""
        if not self.circuit.probe_due():
            return False
        try:
            balance = await self.marketplace.get_account_balance()
        except GatewayError as e:
            logger.warning("Circuit probe for %s failed: %s", pid, e)
            self.circuit.trip(self.circuit.reason or str(e))
            return False
        if balance <= 0:
            logger.warning("Circuit probe for %s: balance still empty", pid)
            self.circuit.trip(self.circuit.reason or "insufficient funds")
            return False
        self.circuit.reset()
        return True

    async def _check_balance(self, order_id: Optional[str]) -> None:
        try:
            balance = await self.marketplace.get_account_balance()
        except GatewayError as e:
            logger.warning("Could not read marketplace balance after placement: %s", e)
            return
        if balance >= self.low_balance_threshold:
            return
        await self.alerts.alert_low_balance(balance, self.low_balance_threshold)
        if order_id:
            try:
                await self.storefront.gateway.annotate_order(order_id, [LOW_BALANCE_TAG], None)
            except GatewayError as e:
                logger.warning("Could not tag order %s with low balance: %s", order_id, e)
