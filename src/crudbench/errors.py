"""Error taxonomy for crudbench.

Every error carries a displayable ``message``; callers at the edges (CLI, MCP,
tester session) print it as-is instead of leaking tracebacks.
"""


class CrudbenchError(Exception):
    """Base class for all crudbench errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message: str = message

    def __str__(self) -> str:
        return self.message


class BackendConnectionError(CrudbenchError):
    """The command backend could not be reached or did not answer in time."""


class MissingParameter(CrudbenchError):
    """A ``{param}`` placeholder in an endpoint path was left unresolved."""

    def __init__(self, parameter: str):
        super().__init__(
            f"Value for parameter {{{parameter}}} is required for this endpoint and was not provided."
        )
        self.parameter: str = parameter


class InvalidConfiguration(CrudbenchError):
    """The API configuration document is malformed or has no usable entities."""

    def __init__(self, message: str, problems: list[str] | None = None):
        super().__init__(message)
        self.problems: list[str] = problems or []


class ServerControlFailure(CrudbenchError):
    """A start/stop/restart call was rejected or failed on the backend."""


class RequestFailure(CrudbenchError):
    """A test request could not be executed by the backend."""
