# tests/unit/services/test_remote_order_workflow.py
from datetime import timedelta

import pytest

from app.core.enums import AvailabilityState, MarketplaceSaleStatus, PlacementOutcome, SoldFrom
from app.core.exceptions import (
    GatewayAuthError,
    GatewayNotFoundError,
    InsufficientFundsError,
    ItemUnavailableError,
    PermanentGatewayError,
    PriceChangedError,
    TransientGatewayError,
)
from app.core.utils import utc_now
from app.schemas.listing import ListingState
from app.services.remote_order_workflow import price_within_tolerance


def pending_listing(pid="100", price=50000, order_id="5001", last_error_code=None):
    return ListingState(
        marketplace_pid=pid,
        storefront_id=f"gid://shopify/Product/{pid}0",
        title="Fender Stratocaster",
        original_price_minor=price,
        availability=AvailabilityState.SOLD_PENDING_REMOTE,
        sold_from=SoldFrom.STOREFRONT,
        pending_remote_order=True,
        storefront_order_id=order_id,
        last_error_code=last_error_code,
    )


@pytest.fixture
def workflow(services):
    return services.workflow


@pytest.fixture
def circuit(services):
    return services.circuit


"""
1. Price tolerance
"""

@pytest.mark.parametrize("expected, live, within", [
    (50000, 50000, True),
    (50000, 52500, True),
    (50000, 52501, False),
    (50000, 10000, True),
    (None, 99999, True),
])
def test_price_within_tolerance(expected, live, within):
    assert price_within_tolerance(expected, live, 5.0) is within


"""
2. Placement outcomes
"""

async def test_successful_placement(workflow, marketplace, storefront):
    marketplace.set_item("100")

    result = await workflow.place(pending_listing())

    assert result.outcome is PlacementOutcome.PLACED
    assert result.remote_order_id == "999"
    assert result.confirmed is True
    assert result.error_code is None
    assert "MarketplaceOrder-999" in storefront.orders["5001"].tags


async def test_confirmation_failure_still_records_order(workflow, marketplace):
    marketplace.set_item("100")
    marketplace.confirm_error = TransientGatewayError("confirm timed out")

    result = await workflow.place(pending_listing())

    assert result.outcome is PlacementOutcome.PLACED
    assert result.remote_order_id == "999"
    assert result.confirmed is False
    assert result.error_code == "PID-100-ConfirmFailed"


async def test_sold_item_is_conflict(workflow, marketplace):
    marketplace.set_item("100", status=MarketplaceSaleStatus.SOLD)
    result = await workflow.place(pending_listing())
    assert result.outcome is PlacementOutcome.CONFLICT
    assert result.error_code == "PID-100-NotAvailable"


async def test_zero_quantity_is_conflict(workflow, marketplace):
    marketplace.set_item("100", quantity=0)
    result = await workflow.place(pending_listing())
    assert result.outcome is PlacementOutcome.CONFLICT


async def test_missing_price_holds(workflow, marketplace):
    marketplace.set_item("100", price=None)
    result = await workflow.place(pending_listing())
    assert result.outcome is PlacementOutcome.HELD
    assert result.error_code == "PID-100-MissingPrice"
    assert marketplace.created_orders == []


@pytest.mark.parametrize("error, outcome, code", [
    (ItemUnavailableError("sold out", code="PRODUCT_SOLD_OUT"), PlacementOutcome.CONFLICT, "PID-100-NotAvailable"),
    (PriceChangedError("price changed", code="INVALID_PRODUCT_PRICE"), PlacementOutcome.HELD, "PID-100-PriceChanged"),
    (TransientGatewayError("read timeout", code="TIMEOUT"), PlacementOutcome.HELD, "PID-100-OrderUnconfirmed"),
])
async def test_create_order_errors(workflow, marketplace, error, outcome, code):
    marketplace.set_item("100")
    marketplace.create_error = error

    result = await workflow.place(pending_listing())

    assert result.outcome is outcome
    assert result.error_code == code
    assert len(marketplace.created_orders) == 1


@pytest.mark.parametrize("error, outcome, code", [
    (ItemUnavailableError("sold out", code="PRODUCT_SOLD_OUT"), PlacementOutcome.CONFLICT, "PID-100-NotAvailable"),
    (ItemUnavailableError("on hold", code="PRODUCT_ON_HOLD"), PlacementOutcome.CONFLICT, "PID-100-NotAvailable"),
    (GatewayNotFoundError("no such product", status_code=404), PlacementOutcome.CONFLICT, "PID-100-NotAvailable"),
    (PermanentGatewayError("bad request", status_code=400), PlacementOutcome.HELD, "PID-100-LookupRejected"),
    (TransientGatewayError("marketplace down", status_code=503), PlacementOutcome.HELD, "PID-100-LookupFailed"),
])
async def test_lookup_errors(workflow, marketplace, circuit, error, outcome, code):
    marketplace.details_error = error

    result = await workflow.place(pending_listing())

    assert result.outcome is outcome
    assert result.error_code == code
    assert marketplace.created_orders == []
    assert not circuit.is_open


async def test_sold_item_after_unconfirmed_create_stays_held(workflow, marketplace):
    marketplace.set_item("100", status=MarketplaceSaleStatus.SOLD, quantity=0)

    result = await workflow.place(pending_listing(last_error_code="PID-100-OrderUnconfirmed"))

    assert result.outcome is PlacementOutcome.HELD
    assert result.error_code == "PID-100-OrderUnconfirmed"
    assert marketplace.created_orders == []


"""
3. Circuit breaker
"""

async def test_insufficient_funds_opens_circuit(workflow, circuit, marketplace, alerts):
    marketplace.set_item("100")
    marketplace.create_error = InsufficientFundsError("not enough points", code="POINT_SHORTAGE")

    result = await workflow.place(pending_listing())

    assert result.outcome is PlacementOutcome.HELD
    assert result.urgent_tag == "URGENT-InsufficientFunds"
    assert circuit.is_open
    assert alerts.sent[-1]["urgent"] is True


async def test_auth_failure_on_lookup_opens_circuit(workflow, circuit, marketplace):
    marketplace.details_error = GatewayAuthError("token rejected", status_code=401)

    result = await workflow.place(pending_listing())

    assert result.outcome is PlacementOutcome.HELD
    assert result.error_code == "URGENT-AuthenticationError"
    assert circuit.is_open


async def test_open_circuit_holds_without_marketplace_calls(workflow, circuit, marketplace):
    marketplace.set_item("100")
    circuit.trip("insufficient funds")

    result = await workflow.place(pending_listing())

    assert result.outcome is PlacementOutcome.HELD
    assert result.error_code == "CircuitOpen"
    assert marketplace.details_calls == []
    assert marketplace.created_orders == []


async def test_successful_probe_closes_circuit(workflow, marketplace, settings):
    marketplace.set_item("100")
    clock = {"now": None}
    workflow.circuit._clock = lambda: clock["now"] or utc_now()
    workflow.circuit.trip("auth")
    clock["now"] = utc_now() + timedelta(seconds=settings.CIRCUIT_PROBE_INTERVAL_SECONDS + 1)

    result = await workflow.place(pending_listing())

    assert result.outcome is PlacementOutcome.PLACED
    assert not workflow.circuit.is_open


"""
4. Balance checks
"""

async def test_low_balance_warns_after_placement(workflow, marketplace, storefront, alerts, settings):
    marketplace.set_item("100")
    marketplace.balance = settings.LOW_BALANCE_THRESHOLD - 1

    result = await workflow.place(pending_listing())

    assert result.outcome is PlacementOutcome.PLACED
    assert "Marketplace account balance low" in alerts.subjects()
    assert "LowBalance" in storefront.orders["5001"].tags
