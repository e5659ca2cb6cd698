import pytest

from conftest import NOW
from refresh_engine.orchestrator.health import CRITICAL_SWEEPS, HealthMonitor, JobHealthRecord


def test_record_staleness_against_expected_interval():
    rec = JobHealthRecord("process-queue", NOW - 5 * 60, expected_interval_minutes=2)
    assert rec.is_stale(NOW) is True
    assert rec.is_stale(NOW, buffer_minutes=5) is False

    assert JobHealthRecord("process-queue", NOW - 60, 2).is_stale(NOW) is False
    assert JobHealthRecord("process-queue", NOW - 120, 2).is_stale(NOW) is False
    assert JobHealthRecord("process-queue", None, 2).is_stale(NOW) is True


@pytest.mark.asyncio
async def test_never_run_sweep_is_unhealthy(redis):
    monitor = HealthMonitor(redis)
    status = await monitor.status(NOW)

    assert status.healthy is False
    body = status.to_dict()
    assert body["status"] == "unhealthy"
    assert {j["name"] for j in body["staleJobs"]} == set(CRITICAL_SWEEPS)
    assert all(j["minutes_overdue"] is None for j in body["staleJobs"])


@pytest.mark.asyncio
async def test_all_sweeps_recent_is_healthy(redis):
    monitor = HealthMonitor(redis)
    for name in CRITICAL_SWEEPS:
        await monitor.record_run(name, NOW - 60)

    status = await monitor.status(NOW)

    assert status.healthy is True
    body = status.to_dict()
    assert body["status"] == "healthy"
    assert "staleJobs" not in body
    assert {j["minutes_since_run"] for j in body["jobs"]} == {1.0}


@pytest.mark.asyncio
async def test_one_lagging_sweep_is_reported_with_overdue_minutes(redis):
    monitor = HealthMonitor(redis, sweeps={"process-queue": 2, "check-stale-data": 10})
    await monitor.record_run("process-queue", NOW - 5 * 60)
    await monitor.record_run("check-stale-data", NOW - 60)

    status = await monitor.status(NOW)

    assert status.healthy is False
    assert status.stale_jobs == [{
        "name":                      "process-queue",
        "last_run":                  NOW - 300,
        "expected_interval_minutes": 2,
        "minutes_since_run":         5.0,
        "minutes_overdue":           3.0,
    }]


@pytest.mark.asyncio
async def test_buffer_widens_the_window(redis):
    monitor = HealthMonitor(redis, sweeps={"process-queue": 2}, buffer_minutes=5)
    await monitor.record_run("process-queue", NOW - 5 * 60)
    assert (await monitor.status(NOW)).healthy is True
