"""Entity configuration model and the pure operations that edit it.

The models mirror the JSON document exchanged with the code-generation backend
(``api_version``, ``api_prefix``, ``server``, ``entities_basic``...). Keys are
written in snake_case; camelCase spellings are accepted when reading.

All models are frozen. Editing operations take the per-table mapping of
``EntityConfig`` objects and return a new mapping, leaving the argument
untouched. An edit that references a missing table or field, or carries an
invalid value, returns the input unchanged.
"""

import logging
from collections.abc import Mapping, Sequence
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from crudbench.errors import InvalidConfiguration

logger = logging.getLogger("crudbench.entities")


class DataType(str, Enum):
    string = "String"
    integer = "Integer"
    float = "Float"
    boolean = "Boolean"
    date = "Date"
    datetime = "DateTime"
    binary = "Binary"
    json = "JSON"


class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"


class EntityModel(BaseModel):
    """Base for all configuration records."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )


# === Entity Models ===


class EntityField(EntityModel):
    name: str
    column_name: str | None = None
    data_type: str = DataType.string.value
    required: bool = False
    unique: bool = False
    searchable: bool = False
    default_value: str | None = None
    description: str | None = None

    @field_validator("data_type", mode="before")
    @classmethod
    def _data_type_value(cls, value: Any) -> Any:
        if isinstance(value, DataType):
            return value.value
        return value


class CustomRoute(EntityModel):
    path: str
    method: HttpMethod
    handler: str = ""

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.upper()
        return value


class EndpointFlags(EntityModel):
    generate_create: bool = False
    generate_read: bool = False
    generate_update: bool = False
    generate_delete: bool = False
    generate_list: bool = False
    custom_routes: list[CustomRoute] = Field(default_factory=list)


ALL_CRUD = EndpointFlags(
    generate_create=True,
    generate_read=True,
    generate_update=True,
    generate_delete=True,
    generate_list=True,
)


class Role(EntityModel):
    name: str
    description: str | None = None


class Permission(EntityModel):
    action: str
    subject: str


class Authorization(EntityModel):
    active: bool = False
    roles: list[Role] = Field(default_factory=list)
    permissions: list[Permission] = Field(default_factory=list)


class ValidationRule(EntityModel):
    """One of Length, Regex, Email, Numeric or Range."""

    type: str
    min: int | float | None = None
    max: int | float | None = None
    pattern: str | None = None


class Validation(EntityModel):
    field: str
    validation_type: ValidationRule
    error_message: str | None = None


class Pagination(EntityModel):
    default_page_size: int = 10
    max_page_size: int = 100
    page_param_name: str = "page"
    size_param_name: str = "size"


class Relationship(EntityModel):
    target_entity: str
    relation_type: str
    foreign_key: str | None = None


class EntityConfig(EntityModel):
    """Configuration of one entity, keyed by its table name in a session."""

    name: str = ""
    table_name: str = ""
    fields: list[EntityField] = Field(default_factory=list)
    relationships: list[Relationship] = Field(default_factory=list)
    # None means the endpoint intent was never specified
    endpoints: EndpointFlags | None = None
    authentication: bool = False
    authorization: Authorization = Field(default_factory=Authorization)
    validations: list[Validation] = Field(default_factory=list)
    pagination: Pagination = Field(default_factory=Pagination)
    # editor bookkeeping for toggle_field, never written to the document:
    # name -> (index, field) for a removed field, None for a field toggle_field added
    toggled_fields: dict[str, tuple[int, EntityField] | None] = Field(
        default_factory=dict, exclude=True, repr=False
    )

    @model_validator(mode="before")
    @classmethod
    def _fill_names(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        data = dict(data)
        name = data.get("name")
        table_name = data.get("table_name", data.get("tableName"))
        if not name and table_name:
            data["name"] = table_name
        if not table_name and name:
            data["table_name"] = name
            data.pop("tableName", None)
        endpoints = data.get("endpoints")
        if isinstance(endpoints, Mapping) and not endpoints:
            data["endpoints"] = None
        return data

    def get_field(self, field_name: str) -> EntityField | None:
        return next((f for f in self.fields if f.name == field_name), None)

    @property
    def effective_endpoints(self) -> EndpointFlags:
        """Endpoint flags in force; unspecified intent means full CRUD."""
        return self.endpoints if self.endpoints is not None else ALL_CRUD


class ServerAddress(EntityModel):
    host: str = "localhost"
    port: int = 8080


class ApiConfiguration(EntityModel):
    """Top-level configuration document shared with the code-generation backend."""

    api_version: str = "1.0"
    api_prefix: str = "/api"
    server: ServerAddress = Field(default_factory=ServerAddress)
    database: dict[str, Any] | None = None
    entities_basic: list[EntityConfig] = Field(default_factory=list)

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)


EntityConfigs = Mapping[str, EntityConfig]

# endpoint ids used by the configuration editor; "get" is the editor's name for read
ENDPOINT_KEYS: dict[str, str] = {
    "list": "generate_list",
    "read": "generate_read",
    "get": "generate_read",
    "create": "generate_create",
    "update": "generate_update",
    "delete": "generate_delete",
}

EDITABLE_FIELD_ATTRIBUTES = frozenset(
    {
        "column_name",
        "data_type",
        "required",
        "unique",
        "searchable",
        "default_value",
        "description",
    }
)


# === Construction ===


def default_entity_config(table: str) -> EntityConfig:
    """Empty configuration for a table: no fields and every endpoint off."""
    return EntityConfig(name=table, table_name=table, endpoints=EndpointFlags())


def imported_entity_config(table: str, columns: Sequence[str]) -> EntityConfig:
    """Configuration for a freshly imported table.

    All CRUD endpoints are on and every column becomes a required, searchable,
    non-unique String field.
    """
    fields = [
        EntityField(
            name=column,
            column_name=column,
            data_type=DataType.string,
            required=True,
            unique=False,
            searchable=True,
        )
        for column in dict.fromkeys(columns)
    ]
    return EntityConfig(
        name=table, table_name=table, fields=fields, endpoints=ALL_CRUD
    )


def import_tables(table_columns: Mapping[str, Sequence[str]]) -> dict[str, EntityConfig]:
    """Build the per-table mapping for a set of imported tables.

    Tables without columns are skipped.
    """
    configs: dict[str, EntityConfig] = {}
    for table, columns in table_columns.items():
        if not columns:
            logger.warning(f"No columns found for table {table}, skipping")
            continue
        configs[table] = imported_entity_config(table, columns)
    logger.info(f"Initial configuration created with {len(configs)} entities")
    return configs


# === Editing Operations ===


def _replace(
    configs: EntityConfigs, table: str, entity: EntityConfig
) -> dict[str, EntityConfig]:
    return {**configs, table: entity}


def toggle_field(configs: EntityConfigs, table: str, field_name: str) -> EntityConfigs:
    """Remove the field if present, otherwise add it back.

    A removed field is remembered with its position, so toggling it again
    restores it exactly. A name with no such record is appended with default
    attributes. Toggling the same name twice gives back an equal mapping.
    """
    entity = configs.get(table)
    if entity is None or not field_name:
        return configs

    toggled = dict(entity.toggled_fields)
    index = next(
        (i for i, f in enumerate(entity.fields) if f.name == field_name), None
    )
    fields = list(entity.fields)

    if index is not None:
        removed = fields.pop(index)
        if field_name in toggled and toggled[field_name] is None:
            del toggled[field_name]
        else:
            toggled[field_name] = (index, removed)
    elif toggled.get(field_name) is not None:
        position, restored = toggled.pop(field_name)
        fields.insert(min(position, len(fields)), restored)
    else:
        fields.append(EntityField(name=field_name, column_name=field_name))
        toggled[field_name] = None

    return _replace(
        configs,
        table,
        entity.model_copy(update={"fields": fields, "toggled_fields": toggled}),
    )


def toggle_endpoint(configs: EntityConfigs, table: str, endpoint_id: str) -> EntityConfigs:
    """Flip one generated endpoint (``list``, ``read``, ``create``, ``update``, ``delete``)."""
    entity = configs.get(table)
    key = ENDPOINT_KEYS.get(endpoint_id)
    if entity is None or key is None:
        return configs

    flags = entity.effective_endpoints
    new_flags = flags.model_copy(update={key: not getattr(flags, key)})
    return _replace(configs, table, entity.model_copy(update={"endpoints": new_flags}))


def set_field_attribute(
    configs: EntityConfigs, table: str, field_name: str, attr: str, value: Any
) -> EntityConfigs:
    """Set one attribute of a field, validating the new value."""
    entity = configs.get(table)
    if entity is None or attr not in EDITABLE_FIELD_ATTRIBUTES:
        return configs

    index = next(
        (i for i, f in enumerate(entity.fields) if f.name == field_name), None
    )
    if index is None:
        return configs

    try:
        updated = EntityField.model_validate(
            {**entity.fields[index].model_dump(), attr: value}
        )
    except ValidationError:
        logger.debug(f"Ignoring invalid value {value!r} for {table}.{field_name}.{attr}")
        return configs

    fields = list(entity.fields)
    fields[index] = updated
    return _replace(configs, table, entity.model_copy(update={"fields": fields}))


def add_custom_route(
    configs: EntityConfigs, table: str, route: CustomRoute | Mapping[str, Any]
) -> EntityConfigs:
    """Append a custom route; path, method and handler must all be given."""
    entity = configs.get(table)
    if entity is None:
        return configs

    if not isinstance(route, CustomRoute):
        try:
            route = CustomRoute.model_validate(route)
        except ValidationError:
            return configs

    if not route.path or not route.handler:
        return configs

    flags = entity.effective_endpoints
    new_flags = flags.model_copy(
        update={"custom_routes": [*flags.custom_routes, route]}
    )
    return _replace(configs, table, entity.model_copy(update={"endpoints": new_flags}))


def remove_custom_route(configs: EntityConfigs, table: str, index: int) -> EntityConfigs:
    entity = configs.get(table)
    if entity is None or entity.endpoints is None:
        return configs

    routes = entity.endpoints.custom_routes
    if not 0 <= index < len(routes):
        return configs

    new_flags = entity.endpoints.model_copy(
        update={"custom_routes": [r for i, r in enumerate(routes) if i != index]}
    )
    return _replace(configs, table, entity.model_copy(update={"endpoints": new_flags}))


# === Configuration Document ===


def build_api_configuration(
    configs: EntityConfigs,
    *,
    api_version: str = "1.0",
    api_prefix: str = "/api",
    server: ServerAddress | None = None,
    database: dict[str, Any] | None = None,
) -> ApiConfiguration:
    """Assemble the configuration document sent to the code-generation backend."""
    return ApiConfiguration(
        api_version=api_version,
        api_prefix=api_prefix,
        server=server or ServerAddress(),
        database=database,
        entities_basic=list(configs.values()),
    )


def parse_api_configuration(data: str | bytes | Mapping[str, Any]) -> ApiConfiguration:
    """Read a configuration document from JSON text or an already-decoded mapping.

    Raises:
        InvalidConfiguration: If the document does not match the wire format
    """
    try:
        if isinstance(data, (str, bytes)):
            return ApiConfiguration.model_validate_json(data)
        return ApiConfiguration.model_validate(data)
    except ValidationError as e:
        problems = [
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in e.errors()
        ]
        raise InvalidConfiguration(
            f"Invalid API configuration ({e.error_count()} problem(s))", problems
        ) from e


def read_configuration_file(path: Path) -> ApiConfiguration:
    """Read a configuration document from a JSON file.

    Raises:
        InvalidConfiguration: If the file is missing or malformed
    """
    if not path.exists():
        raise InvalidConfiguration(f"Configuration file not found at {path}")
    return parse_api_configuration(path.read_text(encoding="utf-8"))


def check_configuration(config: ApiConfiguration) -> None:
    """Reject documents that cannot be served.

    Raises:
        InvalidConfiguration: If there are no entities, or an entity lacks a
            name, a table name or fields
    """
    problems: list[str] = []
    if not config.entities_basic:
        problems.append("Configuration has no entities")

    seen_tables: set[str] = set()
    for index, entity in enumerate(config.entities_basic):
        label = entity.name or f"#{index}"
        if not entity.name or not entity.table_name:
            problems.append(f"Entity at index {index} is missing its name or table name")
        if entity.table_name in seen_tables:
            problems.append(f"Table {entity.table_name} is configured more than once")
        seen_tables.add(entity.table_name)
        if not entity.fields:
            problems.append(f"Entity {label} has no fields")
        names = [f.name for f in entity.fields]
        if len(names) != len(set(names)):
            problems.append(f"Entity {label} has duplicate field names")

    if problems:
        raise InvalidConfiguration("Configuration contains invalid entities", problems)


def configs_from_configuration(config: ApiConfiguration) -> dict[str, EntityConfig]:
    """Key the entities of a configuration document by table name."""
    return {entity.table_name: entity for entity in config.entities_basic}
