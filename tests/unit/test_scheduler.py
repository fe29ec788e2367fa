# tests/unit/test_scheduler.py
import pytest

from app import scheduler as scheduler_module
from app.core.enums import PollTier
from app.core.exceptions import TransientGatewayError


@pytest.fixture(autouse=True)
async def reset_scheduler():
    yield
    await scheduler_module.stop_scheduler()


def test_disabled_scheduler_has_no_jobs(services, settings):
    scheduler = scheduler_module.create_scheduler(services.poller, settings)
    assert scheduler.get_jobs() == []


def test_each_tier_gets_one_cron_job(services, settings):
    enabled = settings.model_copy(update={"SCHEDULER_ENABLED": True})

    scheduler = scheduler_module.create_scheduler(services.poller, enabled)

    jobs = {job.id: job for job in scheduler.get_jobs()}
    assert set(jobs) == {f"marketplace_poll_{tier.value}" for tier in PollTier}
    assert all(job.max_instances == 1 for job in jobs.values())


async def test_poll_failure_is_logged_not_raised(mocker, caplog):
    poller = mocker.Mock()
    poller.run_tier = mocker.AsyncMock(side_effect=TransientGatewayError("marketplace down", status_code=503))

    await scheduler_module.poll_tier_task(poller, PollTier.FREQUENT)

    poller.run_tier.assert_awaited_once_with(PollTier.FREQUENT)
    assert "Scheduled frequent poll failed" in caplog.text


async def test_status_before_start():
    assert await scheduler_module.get_scheduler_status() == {"status": "not_initialized", "jobs": []}
