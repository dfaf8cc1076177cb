"""Tests for the command backend client against an in-process FastAPI backend."""

from typing import Any

import httpx
import pytest
from fastapi import FastAPI, HTTPException
from fastapi.responses import PlainTextResponse

from crudbench.errors import (
    BackendConnectionError,
    RequestFailure,
    ServerControlFailure,
)
from crudbench.cli.tester.client import BackendClient
from crudbench.cli.tester.models import ActionResponse, EndpointTestRequest


def make_backend_app(state: dict[str, Any]) -> FastAPI:
    """Minimal command backend with the routes the client calls."""
    app = FastAPI()

    @app.get("/configuration")
    async def configuration():
        return state.get("configuration")

    @app.get("/server/status")
    async def status():
        return {"status": state.get("status", "stopped")}

    @app.get("/server/metrics")
    async def metrics():
        return {
            "uptime_seconds": 30,
            "request_count": 4,
            "error_count": 0,
            "is_running": True,
            "start_time": 1_700_000_000,
            "current_time": 1_700_000_030,
        }

    @app.get("/server/logs")
    async def logs(limit: int = 50):
        state["log_limit"] = limit
        return [
            {"timestamp": 1_700_000_001, "level": "INFO", "message": "Uvicorn running"},
        ]

    @app.post("/server/actions/{action}")
    async def action(action: str) -> ActionResponse:
        if action in state.get("broken_actions", ()):
            raise HTTPException(status_code=500, detail="backend crashed")
        if action in state.get("failing_actions", ()):
            return ActionResponse(status="error", message=f"Cannot {action}: port in use")
        return ActionResponse(status="success", message=f"Server {action} ok")

    @app.post("/test-endpoint", response_class=PlainTextResponse)
    async def run_request(request: EndpointTestRequest):
        state["request"] = request
        if state.get("unreachable_api"):
            raise HTTPException(status_code=502, detail="connection refused")
        return '{"id": 1}'

    @app.post("/database/test")
    async def database() -> ActionResponse:
        if state.get("database_down"):
            return ActionResponse(status="error", message="could not connect")
        return ActionResponse(status="success", message="connected")

    return app


@pytest.fixture
def state() -> dict[str, Any]:
    return {}


@pytest.fixture
def client(state) -> BackendClient:
    transport = httpx.ASGITransport(app=make_backend_app(state))
    return BackendClient("http://backend", transport=transport)


def failing_client(error: Exception) -> BackendClient:
    def handler(request: httpx.Request) -> httpx.Response:
        raise error

    return BackendClient("http://backend", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_get_server_status(client, state):
    state["status"] = "error: db unreachable"

    assert await client.get_server_status() == "error: db unreachable"


@pytest.mark.asyncio
async def test_configuration_may_be_absent(client):
    assert await client.get_current_configuration() is None


@pytest.mark.asyncio
async def test_configuration_is_parsed(client, state):
    state["configuration"] = {
        "apiPrefix": "/v1",
        "server": {"host": "127.0.0.1", "port": 9000},
        "entitiesBasic": [{"name": "users", "tableName": "users", "fields": []}],
    }

    config = await client.get_current_configuration()

    assert config.api_prefix == "/v1"
    assert config.entities_basic[0].name == "users"


@pytest.mark.asyncio
async def test_metrics_and_logs(client, state):
    metrics = await client.get_server_metrics()
    logs = await client.get_server_logs(limit=10)

    assert metrics.uptime_seconds == 30
    assert [entry.message for entry in logs] == ["Uvicorn running"]
    assert state["log_limit"] == 10


@pytest.mark.asyncio
async def test_control_actions(client):
    assert await client.start_server() == "Server start ok"
    assert await client.stop_server() == "Server stop ok"
    assert await client.restart_server() == "Server restart ok"


@pytest.mark.asyncio
async def test_error_action_reply_raises(client, state):
    state["failing_actions"] = {"start"}

    with pytest.raises(ServerControlFailure, match="Cannot start: port in use"):
        await client.start_server()


@pytest.mark.asyncio
async def test_http_error_on_control_call_raises(client, state):
    state["broken_actions"] = {"restart"}

    with pytest.raises(ServerControlFailure, match="backend crashed"):
        await client.restart_server()


@pytest.mark.asyncio
async def test_test_endpoint_returns_raw_text(client, state):
    request = EndpointTestRequest(url="http://localhost:8000/api/users", method="POST", body="{}")

    assert await client.test_endpoint(request) == '{"id": 1}'
    assert state["request"] == request


@pytest.mark.asyncio
async def test_test_endpoint_failure(client, state):
    state["unreachable_api"] = True
    request = EndpointTestRequest(url="http://localhost:8000/api/users", method="GET")

    with pytest.raises(RequestFailure, match="connection refused"):
        await client.test_endpoint(request)


@pytest.mark.asyncio
async def test_database_connection(client, state):
    assert await client.test_database_connection() == "connected"

    state["database_down"] = True
    with pytest.raises(RequestFailure, match="could not connect"):
        await client.test_database_connection()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [httpx.ConnectError("refused"), httpx.ReadTimeout("slow")],
)
async def test_transport_errors_become_connection_errors(error):
    with pytest.raises(BackendConnectionError):
        await failing_client(error).get_server_status()


def test_socket_path_uses_uds_transport(tmp_path):
    client = BackendClient("http://ignored:1234", socket_path=str(tmp_path / "backend.sock"))

    assert client.base_url == "http://localhost"
    assert isinstance(client._make_transport(), httpx.AsyncHTTPTransport)


def text_client(body: str) -> BackendClient:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=body)

    return BackendClient("http://backend", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("call", "path"),
    [
        (lambda c: c.get_current_configuration(), "/configuration"),
        (lambda c: c.get_server_status(), "/server/status"),
        (lambda c: c.get_server_metrics(), "/server/metrics"),
        (lambda c: c.get_server_logs(10), "/server/logs"),
        (lambda c: c.test_database_connection(), "/database/test"),
    ],
)
async def test_non_json_reply_becomes_connection_error(call, path):
    with pytest.raises(BackendConnectionError, match=f"Malformed reply from backend on {path}"):
        await call(text_client("not json"))


@pytest.mark.asyncio
async def test_non_json_action_reply_is_control_failure():
    with pytest.raises(ServerControlFailure, match="Malformed reply"):
        await text_client("<html>oops</html>").start_server()
