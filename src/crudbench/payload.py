"""Type-driven sample request bodies for write endpoints."""

import json
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from crudbench.entities import EntityConfig, EntityField

Clock = Callable[[], datetime]

FALLBACK_PAYLOAD: dict[str, Any] = {"id": 0, "sample_field": "sample_value"}

INTEGER_TYPES = frozenset(
    {"integer", "number", "int", "bigint", "smallint", "tinyint", "mediumint"}
)
FLOAT_TYPES = frozenset({"float", "double", "decimal", "numeric"})
BOOLEAN_TYPES = frozenset({"boolean", "bool", "tinyint(1)"})
DATETIME_TYPES = frozenset({"datetime", "timestamp"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso_date(now: datetime) -> str:
    return now.date().isoformat()


def _iso_timestamp(now: datetime) -> str:
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _guess_from_name(name: str, now: datetime) -> Any:
    lowered = name.lower()
    if "id" in lowered or "count" in lowered:
        return 0
    if "date" in lowered or "time" in lowered:
        return _iso_date(now)
    if "price" in lowered or "amount" in lowered:
        return 0.0
    return f"Sample {name}"


def sample_value(field: EntityField, now: datetime) -> Any:
    """Default value for one field, chosen by its data type."""
    data_type = (field.data_type or "").lower()
    if data_type == "string":
        return f"Sample {field.name}"
    if data_type in INTEGER_TYPES:
        return 0
    if data_type in FLOAT_TYPES:
        return 0.0
    if data_type in BOOLEAN_TYPES:
        return False
    if data_type == "date":
        return _iso_date(now)
    if data_type in DATETIME_TYPES:
        return _iso_timestamp(now)
    if data_type == "json":
        return {}
    return _guess_from_name(field.name, now)


def build_sample_payload(
    entity: EntityConfig | None, clock: Clock | None = None
) -> dict[str, Any]:
    """Sample body as a dict, keys in field order."""
    fields = [f for f in (entity.fields if entity else []) if f.name]
    if not fields:
        return dict(FALLBACK_PAYLOAD)

    now = (clock or _utcnow)()
    return {field.name: sample_value(field, now) for field in fields}


def generate_sample_body(entity: EntityConfig | None, clock: Clock | None = None) -> str:
    """Pretty-printed JSON sample body for an entity.

    Entities without fields get a minimal placeholder payload so write
    requests never go out with an empty body.
    """
    return json.dumps(build_sample_payload(entity, clock), indent=2, ensure_ascii=False)
