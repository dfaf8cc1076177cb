"""Derive the testable endpoints of an entity from its configuration."""

from pydantic import BaseModel, ConfigDict

from crudbench.entities import (
    ApiConfiguration,
    EntityConfig,
    HttpMethod,
)

DEFAULT_API_URL = "http://localhost:8000/api"

# HTTP methods that carry a request body
METHODS_WITH_BODY: frozenset[HttpMethod] = frozenset({HttpMethod.POST, HttpMethod.PUT})


class EndpointDescriptor(BaseModel):
    """A single testable route."""

    model_config = ConfigDict(frozen=True)

    path: str
    method: HttpMethod
    description: str

    @property
    def has_body(self) -> bool:
        return self.method in METHODS_WITH_BODY


def synthesize_endpoints(entity: EntityConfig | None) -> list[EndpointDescriptor]:
    """Return the endpoints of an entity in their fixed order.

    Generated routes come first (list, read, create, update, delete), each one
    only when its flag is set, followed by the custom routes in declaration
    order. An entity whose endpoint flags were never specified gets the full
    CRUD set.

    Args:
        entity: Entity configuration, or None when nothing is selected

    Returns:
        Fresh list of endpoint descriptors
    """
    if entity is None:
        return []

    name = entity.name or entity.table_name
    collection = f"/{name}"
    item = f"/{name}/{{id}}"
    flags = entity.effective_endpoints

    generated = [
        (flags.generate_list, collection, HttpMethod.GET, f"Get all {name}"),
        (flags.generate_read, item, HttpMethod.GET, f"Get {name} by ID"),
        (flags.generate_create, collection, HttpMethod.POST, f"Create new {name}"),
        (flags.generate_update, item, HttpMethod.PUT, f"Update {name}"),
        (flags.generate_delete, item, HttpMethod.DELETE, f"Delete {name}"),
    ]
    endpoints = [
        EndpointDescriptor(path=path, method=method, description=description)
        for enabled, path, method, description in generated
        if enabled
    ]

    for route in flags.custom_routes:
        endpoints.append(
            EndpointDescriptor(
                path=route.path,
                method=route.method,
                description=route.handler or f"Custom endpoint for {name}",
            )
        )

    return endpoints


def api_base_url(config: ApiConfiguration | None) -> str:
    """Base URL the generated API is served on, including the API prefix."""
    if config is None or not config.server.host or not config.server.port:
        return DEFAULT_API_URL
    return f"http://{config.server.host}:{config.server.port}{config.api_prefix or '/api'}"


def full_url(api_url: str, endpoint: EndpointDescriptor | None) -> str:
    if endpoint is None:
        return api_url
    return f"{api_url}{endpoint.path}"
