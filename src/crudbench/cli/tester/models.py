"""Data models for communication with the command backend."""

from typing import Literal

from pydantic import BaseModel, Field

from crudbench.endpoints import EndpointDescriptor


# === Server Models ===


class ServerMetrics(BaseModel):
    """Point-in-time metrics of the managed API server."""

    uptime_seconds: int = 0
    request_count: int = 0
    error_count: int = 0
    is_running: bool = False
    start_time: float = 0
    current_time: float = 0


class ServerLogEntry(BaseModel):
    """One line of the managed API server's log."""

    timestamp: float
    level: str
    message: str


# === API Request/Response Models ===


class StatusResponse(BaseModel):
    """Response model for the status endpoint.

    ``status`` is ``running``, ``stopped``, ``starting`` or ``error:<message>``.
    """

    status: str


class ActionResponse(BaseModel):
    """Response model for start/stop/restart and database test actions."""

    status: Literal["success", "error"]
    message: str


class EndpointTestRequest(BaseModel):
    """Request forwarded to the backend to execute one test call."""

    url: str
    method: str
    body: str | None = None


# === MCP Response Models ===


class McpActionResponse(BaseModel):
    """MCP response model for start/stop/restart."""

    status: Literal["success", "error"]
    message: str


class McpStatusResponse(BaseModel):
    """MCP response model for the server status."""

    status: str
    message: str
    metrics: ServerMetrics | None = None


class McpEndpointsResponse(BaseModel):
    """MCP response model for the endpoints of one entity."""

    entity: str
    base_url: str
    endpoints: list[EndpointDescriptor] = Field(default_factory=list)


class McpPayloadResponse(BaseModel):
    """MCP response model for a sample request body."""

    entity: str
    body: str


class McpRequestResponse(BaseModel):
    """MCP response model for an executed test request."""

    url: str
    method: str
    response: str


class McpLogsResponse(BaseModel):
    """MCP response model for recent server logs."""

    logs: list[ServerLogEntry] = Field(default_factory=list)
    error_count: int = 0


class McpErrorResponse(BaseModel):
    """MCP response model for errors."""

    error: str
