"""Lifecycle monitor for the API server managed by the command backend.

The monitor is a small state machine over ``ServerStatus``::

    stopped -> starting -> running -> stopping -> stopped
    running -> restarting -> running | error
    any -> error        (failed or timed out poll or control call)

Every control operation runs in three phases: set the intermediate status,
await the backend call under a timeout, then schedule a confirming status
check. Nothing is retried; the next scheduled check is the only recovery path.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from enum import Enum
from typing import Any, NamedTuple

from pydantic import BaseModel, ConfigDict

from crudbench.settings import TesterSettings, conf
from crudbench.cli.tester.client import CommandBackend
from crudbench.cli.tester.models import ServerLogEntry, ServerMetrics
from crudbench.cli.tester.scheduling import AsyncioScheduler, Scheduler, TimerHandle
from crudbench.cli.tester.state import StateContainer

logger = logging.getLogger("crudbench.monitor")

FAILURE_CONFIRM_DELAY = 1.0


class ServerStatus(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    RESTARTING = "restarting"
    ERROR = "error"


class MonitorSnapshot(BaseModel):
    """Immutable view of the monitored server.

    ``has_run`` tells a server that was never seen running apart from one
    that stopped after running. ``last_checked`` is ``None`` until the first
    status check completes.
    """

    model_config = ConfigDict(frozen=True)

    status: ServerStatus = ServerStatus.STOPPED
    message: str = ""
    metrics: ServerMetrics | None = None
    logs: tuple[ServerLogEntry, ...] = ()
    last_checked: float | None = None
    has_run: bool = False
    is_loading_metrics: bool = False
    is_loading_logs: bool = False

    @property
    def is_running(self) -> bool:
        return self.status == ServerStatus.RUNNING

    @property
    def error_count(self) -> int:
        return sum(1 for entry in self.logs if entry.level.upper() == "ERROR")


class ControlAction(NamedTuple):
    name: str
    intermediate: ServerStatus
    pending_message: str
    failure_prefix: str
    confirm_delay: float


START = ControlAction(
    "start",
    ServerStatus.STARTING,
    "Attempting to start API server...",
    "Failed to start API server",
    1.5,
)
STOP = ControlAction(
    "stop", ServerStatus.STOPPING, "Stopping API server...", "Failed to stop server", 1.0
)
RESTART = ControlAction(
    "restart",
    ServerStatus.RESTARTING,
    "Restarting API server...",
    "Failed to restart server",
    2.0,
)


def parse_status(raw: str) -> tuple[ServerStatus, str]:
    """Map a backend status string to a status and a display message."""
    value = raw.strip()
    if value == "running":
        return ServerStatus.RUNNING, "Server is running"
    if value == "stopped":
        return ServerStatus.STOPPED, "Server is stopped."
    if value == "starting":
        return ServerStatus.STARTING, "Server is starting..."
    if value.startswith("error:"):
        return ServerStatus.ERROR, value[len("error:") :].strip()
    return ServerStatus.ERROR, f"Unknown server status: {raw}"


def _reply_signals_failure(reply: str) -> bool:
    lowered = reply.lower()
    return "error" in lowered or "fail" in lowered


class ServerLifecycleMonitor:
    """Polls the backend for server status and drives start/stop/restart."""

    def __init__(
        self,
        backend: CommandBackend,
        scheduler: Scheduler | None = None,
        *,
        status_interval: float = 5.0,
        metrics_interval: float = 3.0,
        status_timeout: float = 5.0,
        start_timeout: float = 30.0,
        control_timeout: float = 30.0,
        log_limit: int = 50,
        metrics_throttle: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.backend: CommandBackend = backend
        self._owns_scheduler: bool = scheduler is None
        self.scheduler: Scheduler = scheduler or AsyncioScheduler()
        self.status_interval: float = status_interval
        self.metrics_interval: float = metrics_interval
        self.status_timeout: float = status_timeout
        self.start_timeout: float = start_timeout
        self.control_timeout: float = control_timeout
        self.log_limit: int = log_limit
        self.metrics_throttle: float = metrics_throttle
        self._clock: Callable[[], float] = clock

        self._state: StateContainer[MonitorSnapshot] = StateContainer(MonitorSnapshot())
        self._status_timer: TimerHandle | None = None
        self._metrics_timer: TimerHandle | None = None
        self._pending_checks: list[TimerHandle] = []
        self._control_done: asyncio.Event | None = None
        self._last_metrics_update: float | None = None

    @classmethod
    def from_settings(
        cls,
        backend: CommandBackend,
        settings: TesterSettings = conf,
        scheduler: Scheduler | None = None,
    ) -> "ServerLifecycleMonitor":
        return cls(
            backend,
            scheduler,
            status_interval=settings.status_interval,
            metrics_interval=settings.metrics_interval,
            status_timeout=settings.status_timeout,
            start_timeout=settings.start_timeout,
            control_timeout=settings.control_timeout,
            log_limit=settings.log_limit,
            metrics_throttle=settings.metrics_throttle,
        )

    # === State ===

    @property
    def snapshot(self) -> MonitorSnapshot:
        return self._state.snapshot

    @property
    def polling(self) -> bool:
        return self._status_timer is not None

    def subscribe(self, listener: Callable[[MonitorSnapshot], None]) -> Callable[[], None]:
        """Register a listener for every new snapshot. Returns an unsubscribe function."""
        return self._state.subscribe(listener)

    def _set_status(self, status: ServerStatus, message: str, **changes: Any) -> None:
        if status == ServerStatus.RUNNING:
            changes["has_run"] = True
        self._state.replace(status=status, message=message, **changes)
        self._sync_metrics_ticker()

    def _sync_metrics_ticker(self) -> None:
        should_tick = self.polling and self.snapshot.is_running
        if should_tick and self._metrics_timer is None:
            self._metrics_timer = self.scheduler.call_every(
                self.metrics_interval, self._tick_metrics
            )
        elif not should_tick and self._metrics_timer is not None:
            self._metrics_timer.cancel()
            self._metrics_timer = None

    # === Polling ===

    async def check_status(self) -> ServerStatus:
        """Ask the backend for the server status and publish it.

        Timeouts and failures put the monitor in ``error``. While the server
        runs, metrics and logs are refreshed as well.
        """
        try:
            raw = await asyncio.wait_for(
                self.backend.get_server_status(), timeout=self.status_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Server status check timed out")
            self._set_status(
                ServerStatus.ERROR,
                "Server status check timeout",
                last_checked=self._clock(),
            )
            return ServerStatus.ERROR
        except Exception as e:
            logger.error(f"Failed to check server status: {e}")
            self._set_status(
                ServerStatus.ERROR,
                str(e) or type(e).__name__,
                last_checked=self._clock(),
            )
            return ServerStatus.ERROR

        status, message = parse_status(raw)
        changes: dict[str, Any] = {"last_checked": self._clock()}
        if status == ServerStatus.STOPPED:
            changes["metrics"] = None
        self._set_status(status, message, **changes)

        if status == ServerStatus.RUNNING:
            await self.fetch_metrics()
            await self.fetch_logs()
        return status

    async def fetch_metrics(self) -> ServerMetrics | None:
        """Refresh metrics while running; clear them otherwise.

        Updates closer together than ``metrics_throttle`` seconds are dropped.
        Failures are logged and leave the status alone.
        """
        if not self.snapshot.is_running:
            if self.snapshot.metrics is not None:
                self._state.replace(metrics=None)
            return None

        self._state.replace(is_loading_metrics=True)
        try:
            metrics = await asyncio.wait_for(
                self.backend.get_server_metrics(), timeout=self.status_timeout
            )
        except Exception as e:
            logger.warning(f"Failed to fetch server metrics: {e!r}")
            self._state.replace(is_loading_metrics=False)
            return None

        now = self._clock()
        if (
            self._last_metrics_update is not None
            and now - self._last_metrics_update < self.metrics_throttle
        ):
            self._state.replace(is_loading_metrics=False)
            return self.snapshot.metrics

        self._last_metrics_update = now
        self._state.replace(metrics=metrics, is_loading_metrics=False)
        return metrics

    async def fetch_logs(self) -> tuple[ServerLogEntry, ...]:
        """Replace the log view with the latest ``log_limit`` entries."""
        self._state.replace(is_loading_logs=True)
        try:
            logs = await asyncio.wait_for(
                self.backend.get_server_logs(self.log_limit),
                timeout=self.status_timeout,
            )
        except Exception as e:
            logger.warning(f"Failed to fetch server logs: {e!r}")
            self._state.replace(is_loading_logs=False)
            return self.snapshot.logs

        self._state.replace(logs=tuple(logs), is_loading_logs=False)
        return self.snapshot.logs

    async def _poll(self) -> None:
        await self.check_status()

    async def _tick_metrics(self) -> None:
        await self.fetch_metrics()

    async def start_polling(self) -> None:
        """Check the status now, then every ``status_interval`` seconds."""
        if self.polling:
            return
        logger.debug(f"Polling server status every {self.status_interval}s")
        self._status_timer = self.scheduler.call_every(self.status_interval, self._poll)
        await self.check_status()

    def stop_polling(self) -> None:
        """Cancel the status poll, the metrics ticker and pending confirmations."""
        for handle in (self._status_timer, self._metrics_timer, *self._pending_checks):
            if handle is not None:
                handle.cancel()
        self._status_timer = None
        self._metrics_timer = None
        self._pending_checks = []

    async def aclose(self) -> None:
        self.stop_polling()
        if self._owns_scheduler and isinstance(self.scheduler, AsyncioScheduler):
            await self.scheduler.aclose()

    async def __aenter__(self) -> "ServerLifecycleMonitor":
        await self.start_polling()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def next_check(self, timeout: float) -> MonitorSnapshot:
        """Wait until the next status check lands, or ``timeout`` seconds pass."""
        checked = self.snapshot.last_checked
        landed = asyncio.Event()

        def listener(snapshot: MonitorSnapshot) -> None:
            if snapshot.last_checked != checked:
                landed.set()

        unsubscribe = self.subscribe(listener)
        try:
            await asyncio.wait_for(landed.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.debug(f"No status check within {timeout}s")
        finally:
            unsubscribe()
        return self.snapshot

    # === Control ===

    async def start(self) -> MonitorSnapshot:
        """Start the server. Also the way out of ``error``."""
        return await self._run_control(START)

    async def stop(self) -> MonitorSnapshot:
        return await self._run_control(STOP)

    async def restart(self) -> MonitorSnapshot:
        return await self._run_control(RESTART)

    async def run_and_confirm(self, action: ControlAction) -> MonitorSnapshot:
        """Run a control action and wait for its confirming status check.

        Returns the snapshot straight away when the action itself failed.
        """
        snapshot = await self._run_control(action)
        if snapshot.status != ServerStatus.ERROR:
            snapshot = await self.next_check(
                timeout=action.confirm_delay + self.status_timeout
            )
        return snapshot

    async def _run_control(self, action: ControlAction) -> MonitorSnapshot:
        if self._control_done is not None:
            logger.info(
                f"Server {action.name} requested while another operation is in flight"
            )
            await self._control_done.wait()
            return self.snapshot

        done = self._control_done = asyncio.Event()
        try:
            await self._control(action)
        finally:
            self._control_done = None
            done.set()
        return self.snapshot

    async def _control(self, action: ControlAction) -> None:
        changes: dict[str, Any] = {}
        if action is RESTART:
            changes["metrics"] = None
        self._set_status(action.intermediate, action.pending_message, **changes)

        call = {
            "start": self.backend.start_server,
            "stop": self.backend.stop_server,
            "restart": self.backend.restart_server,
        }[action.name]
        timeout = self.start_timeout if action is START else self.control_timeout
        confirm_delay = action.confirm_delay

        try:
            reply = await asyncio.wait_for(call(), timeout=timeout)
        except asyncio.TimeoutError:
            message = f"Server {action.name} timeout after {timeout:g} seconds"
            logger.error(message)
            self._set_status(ServerStatus.ERROR, message)
            confirm_delay = FAILURE_CONFIRM_DELAY
        except Exception as e:
            message = f"{action.failure_prefix}: {e}"
            logger.error(message)
            self._set_status(ServerStatus.ERROR, message)
            confirm_delay = FAILURE_CONFIRM_DELAY
        else:
            logger.info(f"Server {action.name}: {reply}")
            if action is START:
                if _reply_signals_failure(reply):
                    self._set_status(
                        ServerStatus.ERROR, f"{action.failure_prefix}: {reply}"
                    )
                    confirm_delay = FAILURE_CONFIRM_DELAY
                else:
                    self._set_status(ServerStatus.RUNNING, reply or "Server is running")

        self._schedule_check(confirm_delay)

    def _schedule_check(self, delay: float) -> None:
        handle: TimerHandle | None = None

        async def confirm() -> None:
            self._pending_checks = [h for h in self._pending_checks if h is not handle]
            await self.check_status()

        handle = self.scheduler.call_later(delay, confirm)
        self._pending_checks.append(handle)
