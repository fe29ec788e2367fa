# tests/unit/services/test_marketplace_poller.py
from datetime import datetime, timedelta

import pytest

from app.core.enums import AvailabilityState, EventKind, MarketplaceSaleStatus, PollTier, SoldFrom
from app.core.exceptions import TransientGatewayError, ValidationError
from app.core.utils import utc_now
from app.integrations.base import MarketplaceOrder, MarketplaceOrderPage
from app.services.marketplace_poller import MarketplacePoller


@pytest.fixture
def enqueued():
    return []


@pytest.fixture
def poller(repository, marketplace, engine, enqueued):
    async def enqueue(event):
        enqueued.append(event)
        return len(enqueued)

    return MarketplacePoller(
        repository=repository,
        marketplace=marketplace,
        record_observation=engine.record_marketplace_observation,
        enqueue=enqueue,
        page_size=2,
    )


"""
1. Order status sync
"""

async def test_twenty_day_window_rejected_before_any_call(poller, marketplace):
    end = datetime(2026, 3, 1)

    with pytest.raises(ValidationError):
        await poller.sync_remote_order_statuses(end - timedelta(days=20), end)

    assert marketplace.get_orders_calls == []


async def test_order_status_changes_are_enqueued_once(poller, marketplace, make_listing, enqueued):
    await make_listing("100")
    marketplace.order_pages = [MarketplaceOrderPage(
        orders=[
            MarketplaceOrder(order_id="999", pid="100", status="SHIP_READY"),
            MarketplaceOrder(order_id="888", pid="555", status="SHIP_READY"),
        ],
        page=0,
        total_pages=1,
    )]
    end = utc_now()

    counts = await poller.sync_remote_order_statuses(end - timedelta(hours=2), end)
    assert counts == {"orders": 2, "enqueued": 1, "skipped": 1, "recovered": 0}
    assert len(enqueued) == 1
    event = enqueued[0]
    assert event.kind is EventKind.MARKETPLACE_ORDER_STATUS_CHANGED
    assert event.listing_key == "100"
    assert event.platform_order_id == "999"
    assert event.order_status == "SHIP_READY"

    # Same status seen again on the next poll
    await poller.sync_remote_order_statuses(end - timedelta(hours=2), end)
    assert len(enqueued) == 1


async def test_order_sync_walks_every_page(poller, marketplace, make_listing, enqueued):
    await make_listing("100")
    await make_listing("101")
    marketplace.order_pages = [
        MarketplaceOrderPage(orders=[MarketplaceOrder(order_id="1", pid="100", status="PAYMENT_RECEIVED")],
                             page=0, total_pages=2),
        MarketplaceOrderPage(orders=[MarketplaceOrder(order_id="2", pid="101", status="REFUNDED")],
                             page=1, total_pages=2),
    ]
    end = utc_now()

    await poller.sync_remote_order_statuses(end - timedelta(days=15), end)

    assert [call[2] for call in marketplace.get_orders_calls] == [0, 1]
    assert [e.platform_order_id for e in enqueued] == ["1", "2"]


async def test_order_for_pending_listing_is_recovered(poller, marketplace, make_listing, enqueued, repository):
    listing = await make_listing("100")
    await repository.transition_state("100", listing.version, {
        "availability": AvailabilityState.SOLD_PENDING_REMOTE,
        "sold_from": SoldFrom.STOREFRONT,
        "pending_remote_order": True,
        "storefront_order_id": "5001",
        "last_error_code": "PID-100-OrderUnconfirmed",
    })
    marketplace.order_pages = [MarketplaceOrderPage(
        orders=[MarketplaceOrder(order_id="999", pid="100", status="PAYMENT_RECEIVED")],
        page=0,
        total_pages=1,
    )]
    end = utc_now()

    counts = await poller.sync_remote_order_statuses(end - timedelta(minutes=30), end)

    assert counts["recovered"] == 1
    assert [(e.kind, e.platform_order_id) for e in enqueued] == [
        (EventKind.REMOTE_ORDER_PLACED, "999"),
        (EventKind.MARKETPLACE_ORDER_STATUS_CHANGED, "999"),
    ]


@pytest.mark.parametrize("status, remote_order_ids", [
    ("REFUNDED", []),
    ("PAYMENT_RECEIVED", ["999", "void:999"]),
])
async def test_released_or_voided_orders_are_not_recovered(poller, marketplace, make_listing, enqueued, repository,
                                                          status, remote_order_ids):
    listing = await make_listing("100")
    await repository.transition_state("100", listing.version, {
        "availability": AvailabilityState.SOLD_PENDING_REMOTE,
        "sold_from": SoldFrom.STOREFRONT,
        "pending_remote_order": True,
        "storefront_order_id": "5002",
        "remote_order_ids": remote_order_ids,
    })
    marketplace.order_pages = [MarketplaceOrderPage(
        orders=[MarketplaceOrder(order_id="999", pid="100", status=status)], page=0, total_pages=1,
    )]
    end = utc_now()

    counts = await poller.sync_remote_order_statuses(end - timedelta(minutes=30), end)

    assert counts["recovered"] == 0
    assert [e.kind for e in enqueued] == [EventKind.MARKETPLACE_ORDER_STATUS_CHANGED]


async def test_seen_statuses_expire_after_daily_window(poller, marketplace, make_listing, enqueued):
    await make_listing("100")
    marketplace.order_pages = [MarketplaceOrderPage(
        orders=[MarketplaceOrder(order_id="999", pid="100", status="SHIP_READY")], page=0, total_pages=1,
    )]
    end = utc_now()
    await poller.sync_remote_order_statuses(end - timedelta(hours=2), end)
    assert len(poller._last_order_status) == 1

    poller._last_order_status["999:100"] = ("SHIP_READY", utc_now() - timedelta(hours=25))
    marketplace.order_pages = []
    await poller.sync_remote_order_statuses(end - timedelta(hours=2), end)

    assert poller._last_order_status == {}


"""
2. Listing status polls
"""

async def test_sold_listing_enqueues_marketplace_sale(poller, marketplace, make_listing, enqueued):
    await make_listing("100", marketplace_status=MarketplaceSaleStatus.SOLD)

    counts = await poller.poll_listing_statuses(PollTier.FREQUENT)

    assert counts["sold"] == 1
    assert enqueued[0].kind is EventKind.MARKETPLACE_SALE_DETECTED
    assert enqueued[0].listing_key == "100"
    assert enqueued[0].source == "poll:frequent"


async def test_selling_listing_enqueues_nothing(poller, make_listing, enqueued, repository):
    await make_listing("100")

    counts = await poller.poll_listing_statuses(PollTier.HOURLY)

    assert counts["checked"] == 1
    assert enqueued == []
    listing = await repository.get_by_marketplace_id("100")
    assert listing.last_seen_selling_at is not None


async def test_missing_listing_needs_second_observation(poller, marketplace, make_listing, enqueued, repository):
    listing = await make_listing("100", marketplace_status=None)

    await poller.poll_listing_statuses(PollTier.FREQUENT)
    assert enqueued == []
    listing = await repository.get_by_marketplace_id("100")
    assert listing.not_found_since is not None

    await repository.transition_state("100", listing.version, {
        "not_found_since": utc_now() - timedelta(hours=1),
    })
    await poller.poll_listing_statuses(PollTier.FREQUENT)

    assert [e.kind for e in enqueued] == [EventKind.MARKETPLACE_SALE_DETECTED]


async def test_relisted_item_enqueues_restore(poller, make_listing, enqueued, repository):
    listing = await make_listing("100")
    await repository.transition_state("100", listing.version, {
        "availability": AvailabilityState.SOLD_REMOTE_ONLY,
        "sold_from": SoldFrom.MARKETPLACE,
    })

    counts = await poller.poll_listing_statuses(PollTier.DAILY)

    assert counts["relisted"] == 1
    assert enqueued[0].kind is EventKind.MARKETPLACE_ORDER_STATUS_CHANGED
    assert enqueued[0].order_status == "RELISTED"


async def test_held_placement_is_resumed(poller, make_listing, enqueued, repository):
    listing = await make_listing("100")
    await repository.transition_state("100", listing.version, {
        "availability": AvailabilityState.SOLD_PENDING_REMOTE,
        "sold_from": SoldFrom.STOREFRONT,
        "pending_remote_order": True,
        "storefront_order_id": "5001",
        "last_error_code": "PID-100-PriceChanged",
    })

    counts = await poller.poll_listing_statuses(PollTier.FREQUENT)

    assert counts["resumed"] == 1
    assert enqueued[0].kind is EventKind.STOREFRONT_SALE
    assert enqueued[0].platform_order_id == "5001"


async def test_sold_item_with_unconfirmed_order_is_left_on_hold(poller, marketplace, make_listing, enqueued, repository):
    listing = await make_listing("100", marketplace_status=MarketplaceSaleStatus.SOLD)
    await repository.transition_state("100", listing.version, {
        "availability": AvailabilityState.SOLD_PENDING_REMOTE,
        "sold_from": SoldFrom.STOREFRONT,
        "pending_remote_order": True,
        "storefront_order_id": "5001",
        "last_error_code": "PID-100-OrderUnconfirmed",
    })

    counts = await poller.poll_listing_statuses(PollTier.FREQUENT)

    assert counts["sold"] == 0
    assert enqueued == []


async def test_poll_errors_are_counted_not_raised(poller, marketplace, make_listing, enqueued):
    await make_listing("100")
    marketplace.details_error = TransientGatewayError("marketplace down", status_code=502)

    counts = await poller.poll_listing_statuses(PollTier.FREQUENT)

    assert counts["errors"] == 1
    assert enqueued == []


async def test_run_tier_reports_both_passes(poller, make_listing):
    await make_listing("100")
    now = utc_now()

    result = await poller.run_tier(PollTier.HOURLY, now=now)

    assert result["tier"] == "hourly"
    assert result["listings"]["checked"] == 1
    assert result["orders"]["orders"] == 0
