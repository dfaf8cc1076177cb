import asyncio
import logging
from collections.abc import Coroutine
from pathlib import Path
from typing import Annotated, Any, TypeVar

from rich import print
from rich.markup import escape
from rich.table import Table
from typer import Argument, BadParameter, Exit, Option, Typer, echo

from crudbench._version import version as crudbench_version
from crudbench.endpoints import EndpointDescriptor, api_base_url, synthesize_endpoints
from crudbench.entities import (
    ApiConfiguration,
    EntityConfig,
    HttpMethod,
    check_configuration,
    read_configuration_file,
)
from crudbench.errors import CrudbenchError, InvalidConfiguration
from crudbench.payload import generate_sample_body
from crudbench.settings import conf
from crudbench.utils import console, format_duration, format_timestamp, progress_spinner
from crudbench.cli.tester.client import BackendClient
from crudbench.cli.tester.executor import PromptResolver, RequestExecutor, StaticResolver
from crudbench.cli.tester.logging import print_log_entry, setup_console_logging
from crudbench.cli.tester.monitor import (
    RESTART,
    START,
    STOP,
    ControlAction,
    MonitorSnapshot,
    ServerLifecycleMonitor,
    ServerStatus,
)
from crudbench.cli.tester.session import TesterSession

T = TypeVar("T")

STATUS_COLORS = {
    ServerStatus.RUNNING: "green",
    ServerStatus.STOPPED: "dim",
    ServerStatus.STARTING: "yellow",
    ServerStatus.STOPPING: "yellow",
    ServerStatus.RESTARTING: "yellow",
    ServerStatus.ERROR: "red",
}

BackendOption = Annotated[
    str | None,
    Option("--backend", help="Base URL of the command backend (default: CRUDBENCH_BACKEND_URL)"),
]
SocketOption = Annotated[
    Path | None,
    Option("--socket", help="Unix socket of the command backend (overrides --backend)"),
]


def version_callback(value: bool) -> None:
    """Callback for version option."""
    if value:
        print(f"crudbench version: {crudbench_version}")
        raise Exit(code=0)


app = Typer(
    name="crudbench | API endpoint tester",
)


@app.callback()
def main(
    version: Annotated[
        bool | None,
        Option(
            "--version",
            callback=version_callback,
            is_eager=True,
            help="Show the version and exit.",
        ),
    ] = None,
    verbose: Annotated[bool, Option("--verbose", "-v", help="Show debug logs")] = False,
):
    """Endpoint synthesis and server lifecycle tooling for generated CRUD APIs."""
    setup_console_logging(logging.DEBUG if verbose else logging.WARNING)


@app.command(name="version", help="Show the version of crudbench")
def version():
    print(f"crudbench version: {crudbench_version}")


# === Helpers ===


def _print_error(error: CrudbenchError) -> None:
    console.print(f"[red]❌ {escape(error.message)}[/red]")
    if isinstance(error, InvalidConfiguration):
        for problem in error.problems:
            console.print(f"[red]   - {escape(problem)}[/red]")


def _run(coro: Coroutine[Any, Any, T]) -> T:
    """Run a coroutine, turning crudbench errors into a red line and exit code 1."""
    try:
        return asyncio.run(coro)
    except CrudbenchError as e:
        _print_error(e)
        raise Exit(code=1)


def _client(backend: str | None, socket: Path | None) -> BackendClient:
    client = BackendClient.from_settings(conf)
    if socket is not None:
        return BackendClient(
            socket_path=socket, timeout=client.timeout, request_timeout=client.request_timeout
        )
    if backend is not None:
        return BackendClient(
            base_url=backend, timeout=client.timeout, request_timeout=client.request_timeout
        )
    return client


def _read_config(config_path: Path) -> ApiConfiguration:
    try:
        return read_configuration_file(config_path)
    except InvalidConfiguration as e:
        _print_error(e)
        raise Exit(code=1)


def _find_entity(config: ApiConfiguration, name: str) -> EntityConfig:
    for entity in config.entities_basic:
        if name in (entity.name, entity.table_name):
            return entity
    console.print(f"[red]❌ Entity {name} not found in configuration[/red]")
    raise Exit(code=1)


def _parse_params(values: list[str] | None) -> dict[str, str]:
    params: dict[str, str] = {}
    for value in values or []:
        if "=" not in value:
            raise BadParameter(f"Expected NAME=VALUE, got {value!r}", param_hint="--param")
        name, _, param = value.partition("=")
        params[name.strip()] = param
    return params


def _endpoints_table(entity: EntityConfig, base_url: str) -> Table:
    table = Table(title=f"{entity.name}  [dim]{base_url}[/dim]", title_justify="left")
    table.add_column("#", style="dim", justify="right")
    table.add_column("Method", style="bold")
    table.add_column("Path", style="cyan")
    table.add_column("Description")
    for index, endpoint in enumerate(synthesize_endpoints(entity), start=1):
        table.add_row(str(index), endpoint.method.value, endpoint.path, endpoint.description)
    return table


def _print_snapshot(snapshot: MonitorSnapshot) -> None:
    color = STATUS_COLORS[snapshot.status]
    console.print(f"[{color}]● {snapshot.status.value}[/{color}] {escape(snapshot.message)}")


# === Configuration commands ===


@app.command(name="endpoints", help="List the endpoints generated for each entity")
def endpoints(
    config_path: Annotated[
        Path | None,
        Argument(
            help="Configuration JSON file. If not provided, the backend's current configuration is used"
        ),
    ] = None,
    entity: Annotated[str | None, Option(help="Only show this entity")] = None,
    backend: BackendOption = None,
    socket: SocketOption = None,
):
    if config_path is not None:
        config = _read_config(config_path)
        entities = list(config.entities_basic)
        base_url = api_base_url(config)
    else:
        session = TesterSession.from_settings(_client(backend, socket))
        if not _run(session.fetch_configuration()):
            console.print(f"[red]❌ {session.state.error}[/red]")
            raise Exit(code=1)
        entities = list(session.state.entities)
        base_url = session.state.api_url

    if entity is not None:
        entities = [e for e in entities if entity in (e.name, e.table_name)]
        if not entities:
            console.print(f"[red]❌ Entity {entity} not found in configuration[/red]")
            raise Exit(code=1)

    for item in entities:
        console.print(_endpoints_table(item, base_url))


@app.command(name="payload", help="Print a sample request body for an entity")
def payload(
    config_path: Annotated[Path, Argument(help="Configuration JSON file")],
    entity: Annotated[str, Argument(help="Entity name or table name")],
):
    config = _read_config(config_path)
    echo(generate_sample_body(_find_entity(config, entity)))


@app.command(name="check", help="Check a configuration file before it is used")
def check(
    config_path: Annotated[Path, Argument(help="Configuration JSON file")],
):
    config = _read_config(config_path)
    try:
        check_configuration(config)
    except InvalidConfiguration as e:
        _print_error(e)
        raise Exit(code=1)

    endpoint_count = sum(len(synthesize_endpoints(e)) for e in config.entities_basic)
    console.print(
        f"[green]✅ {len(config.entities_basic)} entities, {endpoint_count} endpoints[/green]"
    )


# === Request commands ===


async def _require_running(client: BackendClient) -> None:
    monitor = ServerLifecycleMonitor.from_settings(client)
    try:
        status = await monitor.check_status()
    finally:
        await monitor.aclose()
    if status != ServerStatus.RUNNING:
        _print_snapshot(monitor.snapshot)
        console.print("[yellow]Start the API server before sending requests.[/yellow]")
        raise Exit(code=1)


class _MappingThenPrompt(PromptResolver):
    def __init__(self, values: dict[str, str]):
        self.values: dict[str, str] = values

    def __call__(self, name: str, default: str) -> str | None:
        if name in self.values:
            return self.values[name]
        return super().__call__(name, default)


@app.command(name="send", help="Send one request to the generated API")
def send(
    method: Annotated[str, Argument(help="HTTP method")],
    path: Annotated[str, Argument(help="Endpoint path, e.g. /users/{id}")],
    param: Annotated[
        list[str] | None,
        Option("--param", "-p", help="Path parameter as NAME=VALUE, may be repeated"),
    ] = None,
    body: Annotated[str | None, Option(help="JSON request body")] = None,
    body_file: Annotated[Path | None, Option(help="Read the request body from a file")] = None,
    base_url: Annotated[
        str | None,
        Option(help="API base URL. If not provided, it is derived from the backend configuration"),
    ] = None,
    no_prompt: Annotated[
        bool, Option("--no-prompt", help="Fail instead of prompting for missing parameters")
    ] = False,
    backend: BackendOption = None,
    socket: SocketOption = None,
):
    try:
        http_method = HttpMethod(method.upper())
    except ValueError:
        raise BadParameter(f"Unsupported HTTP method: {method}", param_hint="METHOD")
    if body_file is not None:
        body = body_file.read_text(encoding="utf-8")

    params = _parse_params(param)
    resolver = StaticResolver(params) if no_prompt else _MappingThenPrompt(params)
    client = _client(backend, socket)

    async def _send() -> str:
        await _require_running(client)
        url = base_url or api_base_url(await client.get_current_configuration())
        endpoint = EndpointDescriptor(path=path, method=http_method, description="")
        return await RequestExecutor(client, resolver).send(endpoint, url, body)

    echo(_run(_send()))


@app.command(name="test", help="Pick an entity endpoint and send it with a sample body")
def run_test(
    entity: Annotated[str, Argument(help="Entity name")],
    endpoint: Annotated[int, Option("--endpoint", "-e", help="Endpoint number from `endpoints`")] = 1,
    body: Annotated[str | None, Option(help="Replace the sample request body")] = None,
    backend: BackendOption = None,
    socket: SocketOption = None,
):
    client = _client(backend, socket)
    session = TesterSession.from_settings(client, RequestExecutor(client, PromptResolver()))
    monitor = ServerLifecycleMonitor.from_settings(client)

    async def _test() -> str:
        try:
            await monitor.check_status()
            session.attach(monitor)
            if not await session.fetch_configuration():
                raise CrudbenchError(session.state.error or "No API configuration loaded")
            if not session.select_entity(entity):
                raise CrudbenchError(f"Entity {entity} not found in configuration")
            endpoints = session.state.endpoints
            if not 1 <= endpoint <= len(endpoints):
                raise CrudbenchError(f"Entity {entity} has {len(endpoints)} endpoints")
            session.select_endpoint(endpoints[endpoint - 1])
            if body is not None:
                session.edit_body(body)

            selected = session.state.selected_endpoint
            console.print(f"[bold]{selected.method.value}[/bold] {session.state.api_url}{selected.path}")
            if selected.has_body:
                console.print(f"[dim]{escape(session.state.request_body)}[/dim]")
            return await session.send()
        finally:
            session.detach()
            await monitor.aclose()

    echo(_run(_test()))


@app.command(name="db-test", help="Test the database connection of the backend")
def db_test(backend: BackendOption = None, socket: SocketOption = None):
    executor = RequestExecutor(_client(backend, socket))
    result = _run(executor.test_database_connection())
    color = "green" if result.startswith("Database Test Success") else "red"
    console.print(f"[{color}]{result}[/{color}]")
    if color == "red":
        raise Exit(code=1)


# === Server commands ===

server_app = Typer(name="server", help="Manage the generated API server")
app.add_typer(server_app, name="server")


@server_app.command(name="status", help="Check the status of the API server")
def server_status(backend: BackendOption = None, socket: SocketOption = None):
    monitor = ServerLifecycleMonitor.from_settings(_client(backend, socket))

    async def _status() -> MonitorSnapshot:
        try:
            await monitor.check_status()
        finally:
            await monitor.aclose()
        return monitor.snapshot

    snapshot = _run(_status())
    _print_snapshot(snapshot)
    if snapshot.metrics is not None:
        console.print(f"[dim]Uptime: {format_duration(snapshot.metrics.uptime_seconds)}[/dim]")
    if snapshot.status == ServerStatus.ERROR:
        raise Exit(code=1)


def _control(action: ControlAction, backend: str | None, socket: Path | None) -> None:
    monitor = ServerLifecycleMonitor.from_settings(_client(backend, socket))

    async def _act() -> MonitorSnapshot:
        try:
            return await monitor.run_and_confirm(action)
        finally:
            await monitor.aclose()

    with progress_spinner(action.pending_message, f"Server {action.name} finished"):
        snapshot = _run(_act())
    _print_snapshot(snapshot)
    if snapshot.status == ServerStatus.ERROR:
        raise Exit(code=1)


@server_app.command(name="start", help="Start the API server")
def server_start(backend: BackendOption = None, socket: SocketOption = None):
    _control(START, backend, socket)


@server_app.command(name="stop", help="Stop the API server")
def server_stop(backend: BackendOption = None, socket: SocketOption = None):
    _control(STOP, backend, socket)


@server_app.command(name="restart", help="Restart the API server")
def server_restart(backend: BackendOption = None, socket: SocketOption = None):
    _control(RESTART, backend, socket)


@server_app.command(name="metrics", help="Show metrics of the running API server")
def server_metrics(backend: BackendOption = None, socket: SocketOption = None):
    monitor = ServerLifecycleMonitor.from_settings(_client(backend, socket))

    async def _metrics() -> MonitorSnapshot:
        try:
            await monitor.check_status()
        finally:
            await monitor.aclose()
        return monitor.snapshot

    snapshot = _run(_metrics())
    if snapshot.metrics is None:
        _print_snapshot(snapshot)
        console.print("[yellow]No metrics available, the server is not running.[/yellow]")
        raise Exit(code=1)

    metrics = snapshot.metrics
    table = Table(title="API server metrics", title_justify="left")
    table.add_column("Metric", style="cyan")
    table.add_column("Value")
    table.add_row("Status", "running" if metrics.is_running else "stopped")
    table.add_row("Uptime", format_duration(metrics.uptime_seconds))
    table.add_row("Requests", str(metrics.request_count))
    table.add_row("Errors", str(metrics.error_count))
    table.add_row("Started", format_timestamp(metrics.start_time))
    table.add_row("Current time", format_timestamp(metrics.current_time))
    console.print(table)


@server_app.command(name="logs", help="Display recent logs of the API server")
def server_logs(
    limit: Annotated[int, Option(help="Number of entries to show")] = conf.log_limit,
    raw: Annotated[bool, Option("--raw", help="Show messages without formatting")] = False,
    backend: BackendOption = None,
    socket: SocketOption = None,
):
    logs = _run(_client(backend, socket).get_server_logs(limit))
    if not logs:
        console.print("[dim]No logs yet[/dim]")
        return
    for entry in logs:
        print_log_entry(entry, raw_output=raw)

    errors = sum(1 for entry in logs if entry.level.upper() == "ERROR")
    if errors and not raw:
        console.print(f"[red]{errors} error(s) in the last {len(logs)} entries[/red]")


@server_app.command(name="watch", help="Poll the API server status and print changes")
def server_watch(
    duration: Annotated[
        float | None, Option(help="Stop after this many seconds (default: until Ctrl+C)")
    ] = None,
    backend: BackendOption = None,
    socket: SocketOption = None,
):
    monitor = ServerLifecycleMonitor.from_settings(_client(backend, socket))
    last: tuple[ServerStatus, str] | None = None

    def on_change(snapshot: MonitorSnapshot) -> None:
        nonlocal last
        key = (snapshot.status, snapshot.message)
        if key != last:
            last = key
            _print_snapshot(snapshot)

    async def _watch() -> None:
        monitor.subscribe(on_change)
        async with monitor:
            if duration is None:
                await asyncio.Event().wait()
            else:
                await asyncio.sleep(duration)

    try:
        _run(_watch())
    except KeyboardInterrupt:
        console.print("[dim]Stopped watching[/dim]")


@app.command(name="mcp", help="Run the MCP server over stdio")
def mcp():
    from crudbench.cli.tester.mcp import run_mcp_server

    run_mcp_server()


def entrypoint():
    app()


if __name__ == "__main__":
    entrypoint()
