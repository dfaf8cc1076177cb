"""HTTP client for the command backend that manages the generated API server."""

import logging
from pathlib import Path
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from crudbench.entities import ApiConfiguration, parse_api_configuration
from crudbench.errors import (
    BackendConnectionError,
    RequestFailure,
    ServerControlFailure,
)
from crudbench.settings import TesterSettings
from crudbench.cli.tester.models import (
    ActionResponse,
    EndpointTestRequest,
    ServerLogEntry,
    ServerMetrics,
    StatusResponse,
)

logger = logging.getLogger("crudbench.client")


class CommandBackend(Protocol):
    """Command surface of the backend. Every call is remote and may fail or hang."""

    async def get_current_configuration(self) -> ApiConfiguration | None: ...

    async def get_server_status(self) -> str: ...

    async def get_server_metrics(self) -> ServerMetrics: ...

    async def get_server_logs(self, limit: int = 50) -> list[ServerLogEntry]: ...

    async def start_server(self) -> str: ...

    async def stop_server(self) -> str: ...

    async def restart_server(self) -> str: ...

    async def test_endpoint(self, request: EndpointTestRequest) -> str: ...

    async def test_database_connection(self) -> str: ...


def _decode(response: httpx.Response, path: str) -> Any:
    try:
        return response.json()
    except ValueError as e:
        raise BackendConnectionError(f"Malformed reply from backend on {path}") from e


class BackendClient:
    """Client for the command backend, over TCP or a Unix domain socket."""

    def __init__(
        self,
        base_url: str = "http://localhost",
        socket_path: Path | str | None = None,
        timeout: float = 5.0,
        request_timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the backend client.

        Args:
            base_url: Base URL of the backend (ignored for Unix sockets)
            socket_path: Path to a Unix domain socket, if the backend listens on one
            timeout: Default timeout for requests in seconds
            request_timeout: Timeout for control actions and test requests
            transport: Custom transport, mainly for tests
        """
        if isinstance(socket_path, str):
            socket_path = Path(socket_path)

        self.socket_path: Path | None = socket_path
        # Base URL doesn't matter for Unix sockets, but httpx needs one
        self.base_url: str = "http://localhost" if socket_path else base_url.rstrip("/")
        self.timeout: float = timeout
        self.request_timeout: float = request_timeout
        self._transport: httpx.AsyncBaseTransport | None = transport

    @classmethod
    def from_settings(cls, settings: TesterSettings) -> "BackendClient":
        return cls(
            base_url=settings.backend_url,
            socket_path=settings.socket_path,
            timeout=settings.status_timeout,
            request_timeout=settings.request_timeout,
        )

    def _make_transport(self) -> httpx.AsyncBaseTransport | None:
        if self._transport is not None:
            return self._transport
        if self.socket_path is not None:
            return httpx.AsyncHTTPTransport(uds=str(self.socket_path))
        return None

    async def _request(
        self, method: str, path: str, timeout: float | None = None, **kwargs: Any
    ) -> httpx.Response:
        try:
            async with httpx.AsyncClient(
                transport=self._make_transport(),
                base_url=self.base_url,
                timeout=timeout or self.timeout,
            ) as client:
                return await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise BackendConnectionError(
                f"Command backend timed out on {method} {path}"
            ) from e
        except httpx.TransportError as e:
            raise BackendConnectionError(
                f"Cannot connect to command backend at {self.base_url}: {e}"
            ) from e

    async def _get_json(self, path: str, **kwargs: Any) -> Any:
        response = await self._request("GET", path, **kwargs)
        if response.is_error:
            raise BackendConnectionError(
                f"Command backend responded with status {response.status_code} on {path}"
            )
        return _decode(response, path)

    async def _action(self, path: str) -> str:
        response = await self._request("POST", path, timeout=self.request_timeout)
        if response.is_error:
            raise ServerControlFailure(
                response.text or f"Backend responded with status {response.status_code}"
            )
        try:
            result = ActionResponse.model_validate(response.json())
        except ValueError as e:
            raise ServerControlFailure(f"Malformed reply from {path}") from e
        if result.status == "error":
            raise ServerControlFailure(result.message)
        return result.message

    async def get_current_configuration(self) -> ApiConfiguration | None:
        """Fetch the configuration currently loaded by the backend, if any."""
        data = await self._get_json("/configuration")
        if data is None:
            return None
        return parse_api_configuration(data)

    async def get_server_status(self) -> str:
        data = await self._get_json("/server/status")
        try:
            return StatusResponse.model_validate(data).status
        except ValidationError as e:
            raise BackendConnectionError("Malformed status reply from backend") from e

    async def get_server_metrics(self) -> ServerMetrics:
        data = await self._get_json("/server/metrics")
        try:
            return ServerMetrics.model_validate(data)
        except ValidationError as e:
            raise BackendConnectionError("Malformed metrics reply from backend") from e

    async def get_server_logs(self, limit: int = 50) -> list[ServerLogEntry]:
        data = await self._get_json("/server/logs", params={"limit": limit})
        try:
            return [ServerLogEntry.model_validate(item) for item in data]
        except (TypeError, ValidationError) as e:
            raise BackendConnectionError("Malformed logs reply from backend") from e

    async def start_server(self) -> str:
        """Ask the backend to start the generated API server.

        Returns:
            The backend's reply message

        Raises:
            ServerControlFailure: If the backend rejects or fails the action
            BackendConnectionError: If the backend cannot be reached
        """
        return await self._action("/server/actions/start")

    async def stop_server(self) -> str:
        return await self._action("/server/actions/stop")

    async def restart_server(self) -> str:
        return await self._action("/server/actions/restart")

    async def test_endpoint(self, request: EndpointTestRequest) -> str:
        """Have the backend execute one HTTP request and return the raw body.

        Raises:
            RequestFailure: If the backend could not execute the request
            BackendConnectionError: If the backend cannot be reached
        """
        logger.debug(f"Testing endpoint: {request.method} {request.url}")
        response = await self._request(
            "POST",
            "/test-endpoint",
            timeout=self.request_timeout,
            json=request.model_dump(),
        )
        if response.is_error:
            raise RequestFailure(
                response.text or f"Test request failed with status {response.status_code}"
            )
        return response.text

    async def test_database_connection(self) -> str:
        response = await self._request(
            "POST", "/database/test", timeout=self.request_timeout
        )
        if response.is_error:
            raise RequestFailure(
                response.text or f"Database test failed with status {response.status_code}"
            )
        try:
            result = ActionResponse.model_validate(response.json())
        except ValueError as e:
            raise BackendConnectionError(
                "Malformed reply from backend on /database/test"
            ) from e
        if result.status == "error":
            raise RequestFailure(result.message)
        return result.message
