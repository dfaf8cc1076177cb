"""MCP server exposing crudbench's API testing tools."""

from pathlib import Path

from mcp.server.fastmcp import FastMCP

from crudbench.endpoints import EndpointDescriptor, api_base_url, synthesize_endpoints
from crudbench.entities import (
    ApiConfiguration,
    EntityConfig,
    HttpMethod,
    read_configuration_file,
)
from crudbench.errors import CrudbenchError
from crudbench.payload import generate_sample_body
from crudbench.settings import conf
from crudbench.cli.tester.client import BackendClient
from crudbench.cli.tester.executor import RequestExecutor, StaticResolver
from crudbench.cli.tester.models import (
    McpActionResponse,
    McpEndpointsResponse,
    McpErrorResponse,
    McpLogsResponse,
    McpPayloadResponse,
    McpRequestResponse,
    McpStatusResponse,
)
from crudbench.cli.tester.monitor import (
    RESTART,
    START,
    STOP,
    ControlAction,
    ServerLifecycleMonitor,
    ServerStatus,
)

# Initialize the MCP server
mcp = FastMCP("crudbench")


def _get_client() -> BackendClient:
    """Get a BackendClient configured from the environment."""
    return BackendClient.from_settings(conf)


async def _load_configuration(config_path: str | None) -> ApiConfiguration:
    if config_path:
        return read_configuration_file(Path(config_path))
    config = await _get_client().get_current_configuration()
    if config is None:
        raise CrudbenchError("No API configuration loaded on the backend")
    return config


def _find_entity(config: ApiConfiguration, entity: str) -> EntityConfig:
    for candidate in config.entities_basic:
        if entity in (candidate.name, candidate.table_name):
            return candidate
    raise CrudbenchError(f"Entity {entity} not found in configuration")


@mcp.tool()
async def list_endpoints(
    entity: str, config_path: str | None = None
) -> McpEndpointsResponse | McpErrorResponse:
    """List the testable endpoints of an entity.

    Args:
        entity: Entity name or table name
        config_path: Path to a configuration JSON file; when omitted the
            configuration currently loaded on the backend is used

    Returns:
        McpEndpointsResponse with the API base URL and endpoints in display order,
        or McpErrorResponse if the configuration or entity cannot be found
    """
    try:
        config = await _load_configuration(config_path)
        found = _find_entity(config, entity)
    except CrudbenchError as e:
        return McpErrorResponse(error=e.message)

    return McpEndpointsResponse(
        entity=found.name,
        base_url=api_base_url(config),
        endpoints=synthesize_endpoints(found),
    )


@mcp.tool()
async def sample_payload(
    entity: str, config_path: str | None = None
) -> McpPayloadResponse | McpErrorResponse:
    """Generate a sample JSON request body for an entity's write endpoints.

    Args:
        entity: Entity name or table name
        config_path: Path to a configuration JSON file (default: backend configuration)
    """
    try:
        config = await _load_configuration(config_path)
        found = _find_entity(config, entity)
    except CrudbenchError as e:
        return McpErrorResponse(error=e.message)

    return McpPayloadResponse(entity=found.name, body=generate_sample_body(found))


@mcp.tool()
async def send_request(
    method: str,
    path: str,
    params: dict[str, str] | None = None,
    body: str | None = None,
    base_url: str | None = None,
) -> McpRequestResponse | McpErrorResponse:
    """Send a test request to the generated API through the backend.

    Args:
        method: HTTP method (GET, POST, PUT, PATCH, DELETE)
        path: Endpoint path, may contain placeholders such as /users/{id}
        params: Values for the path placeholders
        body: JSON body, only sent for POST and PUT
        base_url: API base URL (default: derived from the backend configuration)

    Returns:
        McpRequestResponse with the pretty-printed response, or McpErrorResponse
        when a path parameter is missing
    """
    client = _get_client()
    try:
        endpoint = EndpointDescriptor(
            path=path, method=HttpMethod(method.upper()), description=""
        )
    except ValueError:
        return McpErrorResponse(error=f"Unsupported HTTP method: {method}")

    try:
        if base_url is None:
            base_url = api_base_url(await client.get_current_configuration())
        executor = RequestExecutor(client, StaticResolver(params or {}))
        response = await executor.send(endpoint, base_url, body)
    except CrudbenchError as e:
        return McpErrorResponse(error=e.message)

    return McpRequestResponse(
        url=f"{base_url}{path}", method=endpoint.method.value, response=response
    )


@mcp.tool()
async def server_status() -> McpStatusResponse:
    """Get the status of the generated API server, with metrics when it runs."""
    monitor = ServerLifecycleMonitor.from_settings(_get_client())
    try:
        await monitor.check_status()
    finally:
        await monitor.aclose()

    snapshot = monitor.snapshot
    return McpStatusResponse(
        status=snapshot.status.value, message=snapshot.message, metrics=snapshot.metrics
    )


async def _control(action: ControlAction) -> McpActionResponse:
    monitor = ServerLifecycleMonitor.from_settings(_get_client())
    try:
        snapshot = await monitor.run_and_confirm(action)
    finally:
        await monitor.aclose()

    if snapshot.status == ServerStatus.ERROR:
        return McpActionResponse(status="error", message=snapshot.message)
    return McpActionResponse(status="success", message=snapshot.message)


@mcp.tool()
async def start_server() -> McpActionResponse:
    """Start the generated API server and report the state its next status check confirms."""
    return await _control(START)


@mcp.tool()
async def stop_server() -> McpActionResponse:
    """Stop the generated API server."""
    return await _control(STOP)


@mcp.tool()
async def restart_server() -> McpActionResponse:
    """Restart the generated API server and report the confirmed state.

    A restart the backend accepts but the server does not survive is
    reported as an error.
    """
    return await _control(RESTART)


@mcp.tool()
async def server_logs(limit: int = 50) -> McpLogsResponse | McpErrorResponse:
    """Get the most recent log entries of the generated API server.

    Args:
        limit: Maximum number of entries (default: 50)
    """
    try:
        logs = await _get_client().get_server_logs(limit)
    except CrudbenchError as e:
        return McpErrorResponse(error=f"Failed to get logs: {e.message}")

    return McpLogsResponse(
        logs=logs,
        error_count=sum(1 for entry in logs if entry.level.upper() == "ERROR"),
    )


def run_mcp_server() -> None:
    """Run the MCP server using stdio transport."""
    mcp.run()
