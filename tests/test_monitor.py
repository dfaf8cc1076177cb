"""Tests for the server lifecycle monitor."""

import asyncio

import pytest

from crudbench.errors import BackendConnectionError, ServerControlFailure
from crudbench.cli.tester.monitor import (
    RESTART,
    MonitorSnapshot,
    ServerLifecycleMonitor,
    ServerStatus,
    parse_status,
)
from crudbench.cli.tester.scheduling import AsyncioScheduler


def record(monitor: ServerLifecycleMonitor) -> list[ServerStatus]:
    """Collect every distinct status the monitor publishes."""
    seen: list[ServerStatus] = []

    def listener(snapshot: MonitorSnapshot) -> None:
        if not seen or seen[-1] != snapshot.status:
            seen.append(snapshot.status)

    monitor.subscribe(listener)
    return seen


def test_initial_snapshot(monitor):
    snapshot = monitor.snapshot

    assert snapshot.status == ServerStatus.STOPPED
    assert snapshot.has_run is False
    assert snapshot.last_checked is None
    assert snapshot.metrics is None


@pytest.mark.parametrize(
    ("raw", "status", "message"),
    [
        ("running", ServerStatus.RUNNING, "Server is running"),
        ("stopped", ServerStatus.STOPPED, "Server is stopped."),
        ("starting", ServerStatus.STARTING, "Server is starting..."),
        ("error: db unreachable", ServerStatus.ERROR, "db unreachable"),
        ("exploded", ServerStatus.ERROR, "Unknown server status: exploded"),
    ],
)
def test_parse_status(raw, status, message):
    assert parse_status(raw) == (status, message)


# === Status checks ===


@pytest.mark.asyncio
async def test_error_status_from_backend(monitor, backend):
    backend.status = "error: db unreachable"

    assert await monitor.check_status() == ServerStatus.ERROR
    assert monitor.snapshot.message == "db unreachable"


@pytest.mark.asyncio
async def test_running_check_refreshes_metrics_and_logs(monitor, backend, scheduler):
    backend.status = "running"
    await scheduler.advance(1)

    await monitor.check_status()

    snapshot = monitor.snapshot
    assert snapshot.status == ServerStatus.RUNNING
    assert snapshot.has_run is True
    assert snapshot.last_checked == 1
    assert snapshot.metrics == backend.metrics
    assert [entry.message for entry in snapshot.logs] == ["Started", "Boom"]
    assert snapshot.error_count == 1
    assert backend.calls == ["status", "metrics", "logs"]


@pytest.mark.asyncio
async def test_status_timeout_sets_error(monitor, backend):
    backend.gates["status"] = asyncio.Event()

    assert await monitor.check_status() == ServerStatus.ERROR
    assert monitor.snapshot.message == "Server status check timeout"


@pytest.mark.asyncio
async def test_status_failure_sets_error(monitor, backend):
    backend.failures["status"] = BackendConnectionError("Cannot connect to command backend")

    await monitor.check_status()

    assert monitor.snapshot.status == ServerStatus.ERROR
    assert monitor.snapshot.message == "Cannot connect to command backend"


@pytest.mark.asyncio
async def test_next_successful_poll_overwrites_error(monitor, backend):
    backend.status = "error: crashed"
    await monitor.check_status()
    backend.status = "running"

    await monitor.check_status()

    assert monitor.snapshot.status == ServerStatus.RUNNING


@pytest.mark.asyncio
async def test_stopped_after_running_keeps_has_run(monitor, backend):
    backend.status = "running"
    await monitor.check_status()
    backend.status = "stopped"

    await monitor.check_status()

    assert monitor.snapshot.status == ServerStatus.STOPPED
    assert monitor.snapshot.has_run is True
    assert monitor.snapshot.metrics is None


# === Metrics and logs ===


@pytest.mark.asyncio
async def test_metrics_cleared_when_not_running(monitor, backend):
    backend.status = "running"
    await monitor.check_status()
    backend.status = "error: gone"
    await monitor.check_status()

    assert await monitor.fetch_metrics() is None
    assert monitor.snapshot.metrics is None


@pytest.mark.asyncio
async def test_metrics_updates_are_throttled(monitor, backend, scheduler):
    backend.status = "running"
    await monitor.check_status()
    first = monitor.snapshot.metrics
    backend.metrics = backend.metrics.model_copy(update={"request_count": 99})

    await monitor.fetch_metrics()
    assert monitor.snapshot.metrics is first

    await scheduler.advance(0.5)
    await monitor.fetch_metrics()
    assert monitor.snapshot.metrics.request_count == 99


@pytest.mark.asyncio
async def test_metrics_failure_leaves_status_alone(monitor, backend):
    backend.status = "running"
    await monitor.check_status()
    backend.failures["metrics"] = BackendConnectionError("boom")

    await monitor.fetch_metrics()

    assert monitor.snapshot.status == ServerStatus.RUNNING
    assert monitor.snapshot.is_loading_metrics is False


@pytest.mark.asyncio
async def test_fetch_logs_replaces_list(monitor, backend):
    await monitor.fetch_logs()
    backend.logs = backend.logs[:1]

    logs = await monitor.fetch_logs()

    assert [entry.message for entry in logs] == ["Started"]
    assert monitor.snapshot.error_count == 0


# === Polling ===


@pytest.mark.asyncio
async def test_polling_checks_immediately_then_every_interval(monitor, backend, scheduler):
    await monitor.start_polling()
    assert backend.calls == ["status"]

    await scheduler.advance(monitor.status_interval)
    assert backend.calls == ["status", "status"]

    monitor.stop_polling()
    await scheduler.advance(60)
    assert backend.calls == ["status", "status"]
    assert scheduler.pending == []


@pytest.mark.asyncio
async def test_metrics_ticker_runs_only_while_running(monitor, backend, scheduler):
    backend.status = "running"
    await monitor.start_polling()
    backend.calls.clear()

    await scheduler.advance(monitor.metrics_interval)
    assert backend.calls == ["metrics"]

    backend.status = "stopped"
    await scheduler.advance(monitor.status_interval - monitor.metrics_interval)
    backend.calls.clear()

    await scheduler.advance(monitor.metrics_interval)
    assert "metrics" not in backend.calls
    monitor.stop_polling()


# === Control operations ===


@pytest.mark.asyncio
async def test_start_passes_through_starting(monitor, backend, scheduler):
    seen = record(monitor)

    snapshot = await monitor.start()

    assert seen == [ServerStatus.STARTING, ServerStatus.RUNNING]
    assert snapshot.message == "API server started on port 8000"
    assert backend.calls == ["start"]

    await scheduler.advance(1.5)
    assert backend.calls[1] == "status"


@pytest.mark.asyncio
async def test_restart_passes_through_restarting(monitor, backend, scheduler):
    backend.status = "running"
    await monitor.check_status()
    seen = record(monitor)

    snapshot = await monitor.restart()

    assert seen == [ServerStatus.RESTARTING]
    assert snapshot.metrics is None
    assert snapshot.message == "Restarting API server..."

    await scheduler.advance(2)
    assert seen == [ServerStatus.RESTARTING, ServerStatus.RUNNING]


@pytest.mark.asyncio
async def test_restart_failure_ends_in_error(monitor, backend):
    backend.status = "running"
    await monitor.check_status()
    backend.failures["restart"] = ServerControlFailure("port already in use")
    seen = record(monitor)

    snapshot = await monitor.restart()

    assert seen == [ServerStatus.RESTARTING, ServerStatus.ERROR]
    assert snapshot.message == "Failed to restart server: port already in use"


@pytest.mark.asyncio
async def test_stop_waits_for_confirming_poll(monitor, backend, scheduler):
    backend.status = "running"
    await monitor.check_status()

    snapshot = await monitor.stop()
    assert snapshot.status == ServerStatus.STOPPING

    await scheduler.advance(1)
    assert monitor.snapshot.status == ServerStatus.STOPPED


@pytest.mark.asyncio
async def test_start_timeout(monitor, backend, scheduler):
    backend.gates["start"] = asyncio.Event()

    snapshot = await monitor.start()

    assert snapshot.status == ServerStatus.ERROR
    assert snapshot.message == "Server start timeout after 0.2 seconds"
    assert [entry.due for entry in scheduler.pending] == [1.0]


@pytest.mark.asyncio
async def test_start_reply_reporting_failure(monitor, backend):
    backend.replies["start"] = "Failed to bind port 8000"

    snapshot = await monitor.start()

    assert snapshot.status == ServerStatus.ERROR
    assert snapshot.message == "Failed to start API server: Failed to bind port 8000"


@pytest.mark.asyncio
async def test_start_recovers_from_error(monitor, backend):
    backend.failures["status"] = BackendConnectionError("unreachable")
    await monitor.check_status()
    del backend.failures["status"]

    assert (await monitor.start()).status == ServerStatus.RUNNING


@pytest.mark.asyncio
async def test_concurrent_control_requests_are_coalesced(monitor, backend):
    gate = backend.gates["start"] = asyncio.Event()

    first = asyncio.create_task(monitor.start())
    await asyncio.sleep(0)
    second = asyncio.create_task(monitor.start())
    await asyncio.sleep(0)
    gate.set()
    await asyncio.gather(first, second)

    assert backend.calls.count("start") == 1
    assert monitor.snapshot.status == ServerStatus.RUNNING


@pytest.mark.asyncio
async def test_context_manager_with_asyncio_scheduler(backend):
    backend.status = "running"
    monitor = ServerLifecycleMonitor(backend, status_interval=0.01, metrics_interval=0.01)

    async with monitor:
        assert monitor.polling
        await asyncio.sleep(0.05)

    assert not monitor.polling
    assert isinstance(monitor.scheduler, AsyncioScheduler)
    assert monitor.scheduler.pending == 0
    assert backend.calls.count("status") >= 2


@pytest.mark.asyncio
async def test_next_check_returns_after_confirming_poll(backend):
    monitor = ServerLifecycleMonitor(backend)
    try:
        await monitor.stop()
        with_check = await monitor.next_check(timeout=3)
    finally:
        await monitor.aclose()

    assert with_check.status == ServerStatus.STOPPED
    assert with_check.last_checked is not None


@pytest.mark.asyncio
async def test_fired_confirming_checks_are_released(monitor, backend, scheduler):
    await monitor.start()
    await monitor.stop()
    assert len(monitor._pending_checks) == 2

    await scheduler.advance(1.5)

    assert monitor._pending_checks == []
    assert monitor.snapshot.status == ServerStatus.STOPPED


@pytest.mark.asyncio
async def test_run_and_confirm_waits_for_the_confirming_poll(backend):
    monitor = ServerLifecycleMonitor(backend)
    try:
        snapshot = await monitor.run_and_confirm(RESTART)
    finally:
        await monitor.aclose()

    assert backend.calls[:2] == ["restart", "status"]
    assert snapshot.status == ServerStatus.RUNNING
    assert snapshot.message == "Server is running"


@pytest.mark.asyncio
async def test_run_and_confirm_returns_failure_at_once(monitor, backend):
    backend.failures["restart"] = ServerControlFailure("port already in use")

    snapshot = await monitor.run_and_confirm(RESTART)

    assert snapshot.status == ServerStatus.ERROR
    assert "status" not in backend.calls
