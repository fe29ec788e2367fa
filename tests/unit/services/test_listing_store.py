# tests/unit/services/test_listing_store.py
import asyncio

import pytest

from app.core.enums import AvailabilityState, PollTier, SoldFrom
from app.core.exceptions import ConcurrencyConflict, DataIntegrityError, ListingNotFoundError
from app.schemas.listing import CatalogSnapshot, ListingState
from app.services.listing_store import check_invariants

"""
1. Catalog upserts
"""

async def test_upsert_creates_active_listing(repository):
    listing = await repository.upsert_from_catalog(CatalogSnapshot(
        marketplace_pid=100,
        storefront_id="gid://shopify/Product/1",
        title="Gibson Les Paul",
        original_price_minor=50000,
    ))

    assert listing.marketplace_pid == "100"
    assert listing.availability is AvailabilityState.ACTIVE
    assert listing.sold_from is SoldFrom.NONE
    assert listing.remote_order_ids == []
    assert listing.effective_quantity == 1
    assert listing.version == 1


async def test_upsert_never_touches_sale_state(repository, make_listing):
    listing = await make_listing("100")
    sold = await repository.transition_state("100", listing.version, {
        "availability": AvailabilityState.SOLD_REMOTE_ONLY,
        "sold_from": SoldFrom.MARKETPLACE,
    })

    refreshed = await repository.upsert_from_catalog(CatalogSnapshot(
        marketplace_pid="100", title="Renamed", original_price_minor=60000,
    ))

    assert refreshed.title == "Renamed"
    assert refreshed.original_price_minor == 60000
    assert refreshed.storefront_id == listing.storefront_id
    assert refreshed.availability is AvailabilityState.SOLD_REMOTE_ONLY
    assert refreshed.version == sold.version + 1


async def test_lookup_by_storefront_id(repository, make_listing):
    listing = await make_listing("100")
    found = await repository.get_by_storefront_id(listing.storefront_id)
    assert found.marketplace_pid == "100"
    assert await repository.get_by_storefront_id("gid://shopify/Product/404") is None
    assert await repository.get_by_marketplace_id("404") is None


def test_catalog_snapshot_requires_pid():
    with pytest.raises(ValueError):
        CatalogSnapshot(marketplace_pid=" ", title="x")


"""
2. Compare-and-swap transitions
"""

async def test_transition_bumps_version(repository, make_listing):
    listing = await make_listing("100")
    updated = await repository.transition_state("100", listing.version, {"needs_review": True})
    assert updated.version == listing.version + 1
    assert updated.needs_review is True


async def test_stale_version_raises_conflict(repository, make_listing):
    listing = await make_listing("100")
    await repository.transition_state("100", listing.version, {"needs_review": True})

    with pytest.raises(ConcurrencyConflict):
        await repository.transition_state("100", listing.version, {"needs_review": False})

    current = await repository.get_by_marketplace_id("100")
    assert current.needs_review is True


async def test_concurrent_writers_exactly_one_wins(repository, make_listing):
    listing = await make_listing("100")

    results = await asyncio.gather(
        repository.transition_state("100", listing.version, {"review_reason": "a"}),
        repository.transition_state("100", listing.version, {"review_reason": "b"}),
        return_exceptions=True,
    )

    conflicts = [r for r in results if isinstance(r, ConcurrencyConflict)]
    winners = [r for r in results if isinstance(r, ListingState)]
    assert len(conflicts) == 1
    assert len(winners) == 1
    current = await repository.get_by_marketplace_id("100")
    assert current.version == listing.version + 1


async def test_unknown_listing(repository):
    with pytest.raises(ListingNotFoundError):
        await repository.transition_state("missing", 1, {"needs_review": True})


async def test_catalog_fields_cannot_be_transitioned(repository, make_listing):
    listing = await make_listing("100")
    with pytest.raises(ValueError):
        await repository.transition_state("100", listing.version, {"title": "nope"})


async def test_remote_order_ids_are_append_only(repository, make_listing):
    listing = await make_listing("100")
    listing = await repository.transition_state("100", listing.version, {
        "availability": AvailabilityState.SOLD_BOTH,
        "sold_from": SoldFrom.BOTH,
        "remote_order_ids": ["999"],
    })

    with pytest.raises(DataIntegrityError):
        await repository.transition_state("100", listing.version, {"remote_order_ids": []})

    appended = await repository.transition_state("100", listing.version, {
        "remote_order_ids": ["999", "void:999"],
        "availability": AvailabilityState.RESTORED,
        "sold_from": SoldFrom.NONE,
    })
    assert appended.remote_order_ids == ["999", "void:999"]
    assert appended.active_remote_order_ids() == []


async def test_invariants_rejected_before_write(repository, make_listing):
    listing = await make_listing("100")
    with pytest.raises(DataIntegrityError):
        await repository.transition_state("100", listing.version, {
            "pending_remote_order": True,
            "sold_from": SoldFrom.MARKETPLACE,
        })
    current = await repository.get_by_marketplace_id("100")
    assert current.version == listing.version


def test_sold_from_both_needs_order_or_error_code():
    with pytest.raises(DataIntegrityError):
        check_invariants(ListingState(
            marketplace_pid="1",
            availability=AvailabilityState.SOLD_REMOTE_ONLY,
            sold_from=SoldFrom.BOTH,
        ))
    check_invariants(ListingState(
        marketplace_pid="1",
        availability=AvailabilityState.SOLD_REMOTE_ONLY,
        sold_from=SoldFrom.BOTH,
        last_error_code="PID-1-NotAvailable",
    ))


@pytest.mark.parametrize("state, quantity", [
    (AvailabilityState.ACTIVE, 1),
    (AvailabilityState.RESTORED, 1),
    (AvailabilityState.SOLD_PENDING_REMOTE, 0),
    (AvailabilityState.SOLD_BOTH, 0),
    (AvailabilityState.SOLD_REMOTE_ONLY, 0),
])
def test_effective_quantity(state, quantity):
    assert ListingState(marketplace_pid="1", availability=state).effective_quantity == quantity


"""
3. Poll selection
"""

async def test_polling_tiers(repository, make_listing):
    active = await make_listing("100")
    sold = await make_listing("101")
    await repository.transition_state("101", sold.version, {
        "availability": AvailabilityState.SOLD_BOTH,
        "sold_from": SoldFrom.BOTH,
        "remote_order_ids": ["5"],
    })
    pending = await make_listing("102")
    await repository.transition_state("102", pending.version, {
        "availability": AvailabilityState.SOLD_PENDING_REMOTE,
        "sold_from": SoldFrom.STOREFRONT,
        "pending_remote_order": True,
        "storefront_order_id": "1",
    })
    await repository.upsert_from_catalog(CatalogSnapshot(marketplace_pid="103", title="Unlinked"))

    for tier in PollTier:
        polled = {listing.marketplace_pid for listing in await repository.list_for_polling(tier)}
        assert polled == {active.marketplace_pid, "102"}
