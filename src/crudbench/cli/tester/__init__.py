"""API tester for crudbench CLI."""

from crudbench.cli.tester.client import BackendClient, CommandBackend
from crudbench.cli.tester.executor import (
    PromptResolver,
    RequestExecutor,
    StaticResolver,
)
from crudbench.cli.tester.models import (
    ActionResponse,
    EndpointTestRequest,
    ServerLogEntry,
    ServerMetrics,
    StatusResponse,
)
from crudbench.cli.tester.monitor import (
    MonitorSnapshot,
    ServerLifecycleMonitor,
    ServerStatus,
)
from crudbench.cli.tester.session import TesterSession, TesterState

__all__ = [
    "ActionResponse",
    "BackendClient",
    "CommandBackend",
    "EndpointTestRequest",
    "MonitorSnapshot",
    "PromptResolver",
    "RequestExecutor",
    "ServerLifecycleMonitor",
    "ServerLogEntry",
    "ServerMetrics",
    "ServerStatus",
    "StaticResolver",
    "StatusResponse",
    "TesterSession",
    "TesterState",
]
