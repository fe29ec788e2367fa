import pytest

from app.core.enums import AvailabilityState, EventKind, JobStatus
from app.core.exceptions import ListingNotFoundError
from app.integrations.events import ReconciliationEvent

AUTH = ("admin", "secret")


async def park_job(services, pid="404"):
    """Queue a sale for an unknown listing and let it fail permanently."""
    job_id = await services.queue.enqueue(ReconciliationEvent(
        kind=EventKind.STOREFRONT_SALE, listing_key=pid, platform_order_id="1",
    ))
    await services.queue._run_job(job_id)
    return job_id


"""
1. Authentication
"""

@pytest.mark.parametrize("auth", [None, ("admin", "wrong"), ("someone", "secret")])
async def test_admin_requires_basic_auth(api_client, auth):
    response = await api_client.get("/admin/jobs/status", auth=auth)
    assert response.status_code == 401


async def test_health_is_public(api_client):
    response = await api_client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


async def test_database_health(api_client):
    response = await api_client.get("/health/db")
    assert response.json() == {"status": "healthy", "database": "connected"}


async def test_worker_health(api_client):
    response = await api_client.get("/health/workers")
    data = response.json()
    assert data["status"] == "degraded"
    assert data["circuit"]["open"] is False


"""
2. Jobs
"""

async def test_parked_jobs_are_listed(api_client, services):
    job_id = await park_job(services)

    response = await api_client.get("/admin/jobs/parked", auth=AUTH)

    assert response.status_code == 200
    jobs = response.json()
    assert [job["id"] for job in jobs] == [job_id]
    assert jobs[0]["status"] == JobStatus.PARKED.value
    assert ListingNotFoundError.__name__ in jobs[0]["last_error"]


async def test_requeue_parked_job(api_client, services):
    job_id = await park_job(services)

    response = await api_client.post(f"/admin/jobs/{job_id}/requeue", auth=AUTH)
    assert response.status_code == 200

    status = (await api_client.get("/admin/jobs/status", auth=AUTH)).json()
    assert status["counts"] == {JobStatus.QUEUED.value: 1}

    missing = await api_client.post("/admin/jobs/9999/requeue", auth=AUTH)
    assert missing.status_code == 404


"""
3. Listings
"""

async def test_upsert_and_fetch_listing(api_client):
    response = await api_client.put("/admin/listings", auth=AUTH, json={
        "marketplace_pid": "300",
        "storefront_id": "gid://shopify/Product/3000",
        "title": "Marshall JCM800",
        "original_price_minor": 120000,
    })
    assert response.status_code == 200
    assert response.json()["availability"] == AvailabilityState.ACTIVE.value

    fetched = await api_client.get("/admin/listings/300", auth=AUTH)
    assert fetched.json()["title"] == "Marshall JCM800"

    missing = await api_client.get("/admin/listings/999", auth=AUTH)
    assert missing.status_code == 404


async def test_review_queue(api_client, repository, make_listing):
    listing = await make_listing("100")
    await make_listing("101")
    await repository.transition_state("100", listing.version, {
        "needs_review": True,
        "review_reason": "second storefront order",
    })

    response = await api_client.get("/admin/listings/review", auth=AUTH)

    assert [item["marketplace_pid"] for item in response.json()] == ["100"]


"""
4. Operations
"""

async def test_manual_poll(api_client, make_listing):
    await make_listing("100")

    response = await api_client.post("/admin/polls/hourly", auth=AUTH)

    assert response.status_code == 200
    assert response.json()["listings"]["checked"] == 1


async def test_unknown_poll_tier(api_client):
    response = await api_client.post("/admin/polls/weekly", auth=AUTH)
    assert response.status_code == 422


async def test_circuit_reset(api_client, services):
    services.circuit.trip("insufficient funds")

    response = await api_client.post("/admin/circuit/reset", auth=AUTH)

    assert response.json()["open"] is False
    assert not services.circuit.is_open
