"""Compile user filter requests into record predicates."""

from __future__ import annotations

import re
import uuid
from typing import Any, Iterable, List

from app.records_validation import convert, is_uuid, parse_date, parse_number
from recordbase.errors import InvalidOperator, InvalidRange, RecordError, UnknownField
from recordbase.predicate import Predicate, and_
from recordbase.schema import EntityDefinition, FieldDefinition


OPERATORS = (
    "eq",
    "ne",
    "gt",
    "lt",
    "gte",
    "lte",
    "in",
    "nin",
    "contains",
    "starts_with",
    "ends_with",
    "between",
)

# System columns filterable with typed operators even though no entity declares them.
SYSTEM_FILTER_FIELDS = {
    "created_at": FieldDefinition(name="created_at", type="date", label="Created At"),
    "updated_at": FieldDefinition(name="updated_at", type="date", label="Updated At"),
    "created_by": FieldDefinition(name="created_by", type="text", label="Created By"),
    "updated_by": FieldDefinition(name="updated_by", type="text", label="Updated By"),
}


def normalize_filter(raw: Any, idx: int) -> tuple[str, str, Any]:
    path = f"filters[{idx}]"
    if not isinstance(raw, dict):
        raise InvalidOperator("filter must be an object", path)
    field = raw.get("field")
    if not isinstance(field, str) or not field or field.startswith("$"):
        raise UnknownField(str(field), f"{path}.field")
    operator = raw.get("operator") or "eq"
    if operator not in OPERATORS:
        raise InvalidOperator(f"unsupported operator '{operator}'", f"{path}.operator", {"operator": operator})
    return field, operator, raw.get("value")


def _split(value: Any) -> List[Any]:
    if isinstance(value, str):
        return [part.strip() for part in value.split(",")]
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _id_filter(operator: str, value: Any) -> Predicate:
    if operator == "in":
        ids = [str(uuid.UUID(v)) for v in _split(value) if isinstance(v, str) and is_uuid(v)]
        return {"id": {"$in": ids}}
    if operator == "eq" and isinstance(value, str) and is_uuid(value):
        return {"id": str(uuid.UUID(value))}
    if operator == "eq":
        return {"id": {"$in": []}}
    raise InvalidOperator(f"operator '{operator}' is not supported on id", "id", {"operator": operator})


def _between(field: FieldDefinition, value: Any) -> Predicate:
    message = f"invalid range values for field '{field.display_label}'"
    parts = _split(value)
    if len(parts) != 2:
        raise InvalidRange(message, field.name)
    start, end = parts
    start_date = parse_date(start) if isinstance(start, str) else None
    end_date = parse_date(end) if isinstance(end, str) else None
    if start_date is not None and end_date is not None:
        return {field.name: {"$gte": start_date, "$lte": end_date}}
    start_num = parse_number(start)
    end_num = parse_number(end)
    if start_num is not None and end_num is not None:
        return {field.name: {"$gte": start_num, "$lte": end_num}}
    raise InvalidRange(message, field.name, {"value": value})


def _typed(field: FieldDefinition, value: Any) -> Any:
    try:
        return convert(field, value)
    except RecordError as exc:
        exc.message = f"invalid filter value for '{field.display_label}': {exc.message}"
        raise


def _typed_many(field: FieldDefinition, values: Iterable[Any]) -> List[Any]:
    out: List[Any] = []
    for item in values:
        typed = _typed(field, item)
        if isinstance(typed, list):
            out.extend(typed)
        elif typed is not None:
            out.append(typed)
    return out


def _pattern(operator: str, text: str) -> str:
    escaped = re.escape(text)
    if operator == "starts_with":
        return "^" + escaped
    if operator == "ends_with":
        return escaped + "$"
    return escaped


def compile_filter(field: FieldDefinition, operator: str, value: Any) -> Predicate:
    name = field.name
    if operator == "between":
        return _between(field, value)
    if operator in {"in", "nin"}:
        return {name: {f"${operator}": _typed_many(field, _split(value))}}

    typed = _typed(field, value)
    if field.type == "multiselect" and isinstance(typed, list):
        # a multiselect matches when it holds any of the requested options
        if operator in {"eq", "contains"}:
            return {name: {"$in": typed}}
        if operator == "ne":
            return {name: {"$nin": typed}}
    if operator == "eq":
        return {name: typed}
    if operator in {"ne", "gt", "lt", "gte", "lte"}:
        return {name: {f"${operator}": typed}}
    if isinstance(typed, str):
        return {name: {"$regex": _pattern(operator, typed), "$options": "i"}}
    return {name: typed}


def compile_filters(entity: EntityDefinition, filters: List[dict] | None) -> Predicate:
    """AND together every filter; the first invalid value aborts compilation."""
    parts: List[Predicate] = []
    for idx, raw in enumerate(filters or []):
        field_name, operator, value = normalize_filter(raw, idx)
        if field_name in {"id", "_id"}:
            parts.append(_id_filter(operator, value))
            continue
        field = entity.get_field(field_name) or SYSTEM_FILTER_FIELDS.get(field_name)
        if field is None:
            parts.append({field_name: {"$eq": value}})
            continue
        parts.append(compile_filter(field, operator, value))
    return and_(*parts)
