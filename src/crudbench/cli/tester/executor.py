"""Execution of test requests against the generated API."""

import json
import logging
import re
from collections.abc import Callable, Mapping
from urllib.parse import quote

from rich.prompt import Prompt

from crudbench.endpoints import EndpointDescriptor, full_url
from crudbench.errors import MissingParameter
from crudbench.utils import console
from crudbench.cli.tester.client import CommandBackend
from crudbench.cli.tester.models import EndpointTestRequest

logger = logging.getLogger("crudbench.executor")

PATH_PARAMETER = re.compile(r"\{([^}]+)\}")

# (parameter name, suggested default) -> value, or None when nothing was given
ParameterResolver = Callable[[str, str], str | None]


class PromptResolver:
    """Asks the operator for each path parameter on the console."""

    def __call__(self, name: str, default: str) -> str | None:
        return Prompt.ask(
            f"Enter value for [cyan]{{{name}}}[/cyan]", default=default, console=console
        )


class StaticResolver:
    """Resolves path parameters from a fixed mapping."""

    def __init__(self, values: Mapping[str, str] | None = None, use_defaults: bool = False):
        self.values: dict[str, str] = dict(values or {})
        self.use_defaults: bool = use_defaults

    def __call__(self, name: str, default: str) -> str | None:
        if name in self.values:
            return self.values[name]
        return default if self.use_defaults else None


def resolve_path_parameters(url: str, resolver: ParameterResolver) -> str:
    """Substitute every ``{name}`` token in ``url``, in order of appearance.

    Raises:
        MissingParameter: If the resolver returns nothing usable for a token
    """
    resolved = url
    for name in PATH_PARAMETER.findall(url):
        value = resolver(name, "1" if name == "id" else "")
        if value is None or not value.strip():
            raise MissingParameter(name)
        resolved = resolved.replace(f"{{{name}}}", quote(value.strip(), safe=""), 1)
    return resolved


def format_response(text: str) -> str:
    """Pretty-print JSON responses; anything else is returned untouched."""
    try:
        return json.dumps(json.loads(text), indent=2, ensure_ascii=False)
    except ValueError:
        return text


def format_failure(details: str) -> str:
    return json.dumps({"error": "API Request Failed", "details": details}, indent=2)


class RequestExecutor:
    """Sends one endpoint through the command backend and renders the reply."""

    def __init__(self, backend: CommandBackend, resolver: ParameterResolver | None = None):
        self.backend: CommandBackend = backend
        self.resolver: ParameterResolver = resolver or PromptResolver()

    async def send(
        self, endpoint: EndpointDescriptor, base_url: str, body: str | None = None
    ) -> str:
        """Execute ``endpoint`` under ``base_url``.

        The body is attached only for POST and PUT. Backend failures come back
        as a JSON error block; nothing is retried.

        Raises:
            MissingParameter: If a path parameter was not supplied. No request is made.
        """
        url = resolve_path_parameters(full_url(base_url, endpoint), self.resolver)
        request = EndpointTestRequest(
            url=url,
            method=endpoint.method.value,
            body=body if endpoint.has_body else None,
        )

        logger.info(f"{request.method} {request.url}")
        try:
            result = await self.backend.test_endpoint(request)
        except Exception as e:
            details = str(e) or type(e).__name__
            logger.error(f"{request.method} {request.url} failed: {details}")
            return format_failure(details)

        return format_response(result)

    async def test_database_connection(self) -> str:
        try:
            result = await self.backend.test_database_connection()
        except Exception as e:
            logger.error(f"Database test failed: {e}")
            return f"Database Test Failed: {e}"
        return f"Database Test Success: {result}"
