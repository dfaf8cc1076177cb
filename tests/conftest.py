"""Shared fixtures: an in-memory command backend and a manually driven scheduler."""

import asyncio
import logging

import pytest

from crudbench.entities import ApiConfiguration, EntityConfig, ServerAddress
from crudbench.cli.tester.models import EndpointTestRequest, ServerLogEntry, ServerMetrics
from crudbench.cli.tester.monitor import ServerLifecycleMonitor
from crudbench.cli.tester.scheduling import ManualScheduler


class FakeBackend:
    """In-memory CommandBackend.

    ``failures`` maps a call name to the exception it raises; ``gates`` maps a
    call name to an event the call waits on before answering.
    """

    def __init__(
        self, status: str = "stopped", configuration: ApiConfiguration | None = None
    ):
        self.status: str = status
        self.configuration: ApiConfiguration | None = configuration
        self.metrics: ServerMetrics = ServerMetrics(
            uptime_seconds=65,
            request_count=12,
            error_count=1,
            is_running=True,
            start_time=1_700_000_000,
            current_time=1_700_000_065,
        )
        self.logs: list[ServerLogEntry] = [
            ServerLogEntry(timestamp=1_700_000_001, level="INFO", message="Started"),
            ServerLogEntry(timestamp=1_700_000_002, level="ERROR", message="Boom"),
        ]
        self.replies: dict[str, str] = {
            "start": "API server started on port 8000",
            "stop": "API server stopped",
            "restart": "API server restarted",
            "database": "Connected to users_db",
        }
        self.response: str = '{"id": 1, "name": "Ada"}'
        self.calls: list[str] = []
        self.requests: list[EndpointTestRequest] = []
        self.failures: dict[str, Exception] = {}
        self.gates: dict[str, asyncio.Event] = {}

    async def _call(self, name: str) -> None:
        self.calls.append(name)
        gate = self.gates.get(name)
        if gate is not None:
            await gate.wait()
        if name in self.failures:
            raise self.failures[name]

    async def get_current_configuration(self) -> ApiConfiguration | None:
        await self._call("configuration")
        return self.configuration

    async def get_server_status(self) -> str:
        await self._call("status")
        return self.status

    async def get_server_metrics(self) -> ServerMetrics:
        await self._call("metrics")
        return self.metrics

    async def get_server_logs(self, limit: int = 50) -> list[ServerLogEntry]:
        await self._call("logs")
        return self.logs[-limit:]

    async def start_server(self) -> str:
        await self._call("start")
        self.status = "running"
        return self.replies["start"]

    async def stop_server(self) -> str:
        await self._call("stop")
        self.status = "stopped"
        return self.replies["stop"]

    async def restart_server(self) -> str:
        await self._call("restart")
        self.status = "running"
        return self.replies["restart"]

    async def test_endpoint(self, request: EndpointTestRequest) -> str:
        await self._call("test_endpoint")
        self.requests.append(request)
        return self.response

    async def test_database_connection(self) -> str:
        await self._call("database")
        return self.replies["database"]


@pytest.fixture(autouse=True)
def reset_crudbench_logger():
    """Undo console logging set up by CLI invocations."""
    yield
    logger = logging.getLogger("crudbench")
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


@pytest.fixture
def users_entity() -> EntityConfig:
    """Entity with one integer field and only the create endpoint, in wire format."""
    return EntityConfig.model_validate(
        {
            "name": "users",
            "tableName": "users",
            "fields": [
                {
                    "name": "age",
                    "columnName": "age",
                    "dataType": "Integer",
                    "required": True,
                    "unique": False,
                    "searchable": False,
                }
            ],
            "endpoints": {
                "generateCreate": True,
                "generateRead": False,
                "generateUpdate": False,
                "generateDelete": False,
                "generateList": False,
                "customRoutes": [],
            },
        }
    )


@pytest.fixture
def crud_entity() -> EntityConfig:
    return EntityConfig.model_validate(
        {
            "name": "products",
            "table_name": "products",
            "fields": [
                {"name": "id", "data_type": "Integer"},
                {"name": "title", "data_type": "String"},
                {"name": "price", "data_type": "Float"},
            ],
            "endpoints": {
                "generate_create": True,
                "generate_read": True,
                "generate_update": True,
                "generate_delete": True,
                "generate_list": True,
            },
        }
    )


@pytest.fixture
def configuration(users_entity: EntityConfig, crud_entity: EntityConfig) -> ApiConfiguration:
    return ApiConfiguration(
        api_prefix="/v1",
        server=ServerAddress(host="127.0.0.1", port=9000),
        entities_basic=[users_entity, crud_entity],
    )


@pytest.fixture
def backend(configuration: ApiConfiguration) -> FakeBackend:
    return FakeBackend(configuration=configuration)


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def monitor(backend: FakeBackend, scheduler: ManualScheduler) -> ServerLifecycleMonitor:
    return ServerLifecycleMonitor(
        backend,
        scheduler,
        status_timeout=0.2,
        start_timeout=0.2,
        control_timeout=0.2,
        clock=scheduler.clock,
    )
