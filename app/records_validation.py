"""Field value validation and conversion for entity records."""

from __future__ import annotations

import math
import re
import uuid
from datetime import date, datetime, time, timezone
from typing import Any, Callable, Dict, List

from recordbase.errors import (
    FieldNotWritable,
    InvalidFormat,
    InvalidOption,
    InvalidType,
    MissingField,
    RecordError,
    ReferenceNotFound,
    UnknownField,
)
from recordbase.schema import SYSTEM_FIELDS, STORAGE_FIELDS, EntityDefinition, FieldDefinition


# (field, identifier) -> whether the referenced record or file exists
RefCheck = Callable[[FieldDefinition, str], bool]

EMAIL_RE = re.compile(r"^[\w.-]+@([\w-]+\.)+[\w-]{2,4}$")

_EMPTY_KEEPS = {"text", "textarea", "select", "multiselect"}
_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}


def is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
        return True
    except (TypeError, ValueError, AttributeError):
        return False


def parse_date(value: str) -> datetime | None:
    """Parse an ISO-8601 timestamp or a plain ``YYYY-MM-DD`` date to UTC."""
    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    if len(text) == 10:
        try:
            day = date.fromisoformat(text)
        except ValueError:
            return None
        return datetime.combine(day, time(0, 0), tzinfo=timezone.utc)
    if "T" not in text and " " not in text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00").replace("z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return None
    return parsed.astimezone(timezone.utc)


def parse_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number):
        return None
    return number


def _reference_id(value: Any) -> Any:
    # populated objects echoed back by clients carry the identifier under "id"
    if isinstance(value, dict):
        return value.get("id")
    return value


def convert(field: FieldDefinition, raw: Any, ref_exists: RefCheck | None = None) -> Any:
    """Return the storage-ready value for ``raw`` or raise a ``RecordError``.

    ``None`` means the field is omitted. Reference types only hit the store when
    ``ref_exists`` is given.
    """
    label = field.display_label
    if raw is None:
        return None
    if isinstance(raw, str) and raw == "" and field.type not in _EMPTY_KEEPS:
        return None

    ftype = field.type
    if ftype in {"text", "textarea", "url", "phone"}:
        if not isinstance(raw, str):
            raise InvalidType(f"field '{label}' expects text", field.name)
        return raw

    if ftype in {"number", "currency"}:
        number = parse_number(raw)
        if number is None:
            raise InvalidType(f"field '{label}' expects a number", field.name)
        return number

    if ftype == "boolean":
        if isinstance(raw, bool):
            return raw
        if isinstance(raw, str):
            if raw in _TRUE:
                return True
            if raw in _FALSE:
                return False
        raise InvalidType(f"field '{label}' expects a boolean", field.name)

    if ftype == "date":
        if isinstance(raw, datetime):
            if raw.tzinfo is None:
                raw = raw.replace(tzinfo=timezone.utc)
            return raw.astimezone(timezone.utc)
        if not isinstance(raw, str):
            raise InvalidType(f"field '{label}' expects a date string", field.name)
        parsed = parse_date(raw)
        if parsed is None:
            raise InvalidFormat(
                f"field '{label}' has an invalid date format (use ISO-8601 or YYYY-MM-DD)",
                field.name,
            )
        return parsed

    if ftype == "email":
        if not isinstance(raw, str):
            raise InvalidType(f"field '{label}' expects text", field.name)
        if not EMAIL_RE.match(raw):
            raise InvalidFormat(f"field '{label}' has an invalid email format", field.name)
        return raw

    if ftype == "select":
        if not isinstance(raw, str):
            raise InvalidType(f"field '{label}' expects text", field.name)
        if raw and field.options is not None and raw not in field.options:
            raise InvalidOption(
                f"field '{label}' must be one of {list(field.options)}", field.name, {"value": raw}
            )
        return raw

    if ftype == "multiselect":
        if isinstance(raw, str):
            values = [part.strip() for part in raw.split(",") if part.strip()]
        elif isinstance(raw, (list, tuple)):
            values = list(raw)
        else:
            raise InvalidType(f"field '{label}' expects a list", field.name)
        for item in values:
            if not isinstance(item, str):
                raise InvalidType(f"field '{label}' expects a list of text", field.name)
            if field.options is not None and item not in field.options:
                raise InvalidOption(
                    f"field '{label}' must be one of {list(field.options)}", field.name, {"value": item}
                )
        return values

    if ftype in {"lookup", "file", "image"}:
        ref = _reference_id(raw)
        if ref is None or ref == "":
            return None
        if not isinstance(ref, str):
            raise InvalidType(f"field '{label}' expects an identifier or populated object", field.name)
        if not is_uuid(ref):
            raise InvalidFormat(f"field '{label}' has an invalid identifier", field.name, {"id": ref})
        if ref_exists is not None and not ref_exists(field, ref):
            raise ReferenceNotFound(label, ref, field.name)
        return ref

    return raw


def check_writable(field: FieldDefinition, field_mask: Dict[str, str] | None) -> None:
    if field_mask is None:
        return
    if field_mask.get(field.name, "read_write") != "read_write":
        raise FieldNotWritable(field.display_label, field.name)


def validate_record_payload(
    entity: EntityDefinition,
    data: Any,
    for_create: bool,
    field_mask: Dict[str, str] | None = None,
    ref_exists: RefCheck | None = None,
) -> tuple[List[RecordError], dict]:
    """Validate a create/update payload and convert every supplied value.

    Returns ``(errors, converted)``; on update only supplied fields are checked
    and converted.
    """
    errors: List[RecordError] = []
    if not isinstance(data, dict):
        return [InvalidType("record data must be an object")], {}

    reserved = set(SYSTEM_FIELDS) | set(STORAGE_FIELDS)
    for key in data.keys():
        field = entity.get_field(key)
        if field is None:
            if key in reserved:
                errors.append(FieldNotWritable(key, key))
            else:
                errors.append(UnknownField(key))
            continue
        try:
            check_writable(field, field_mask)
        except FieldNotWritable as exc:
            errors.append(exc)
    if errors:
        return errors, {}

    if for_create:
        for field in entity.fields:
            if not field.required:
                continue
            val = data.get(field.name)
            if val is None or val == "" or val == []:
                errors.append(MissingField(field.display_label, field.name))
        if errors:
            return errors, {}

    converted: dict = {}
    for field in entity.fields:
        if field.name not in data:
            continue
        try:
            value = convert(field, data[field.name], ref_exists)
        except RecordError as exc:
            errors.append(exc)
            continue
        if field.required and (value is None or value == "" or value == []):
            errors.append(MissingField(field.display_label, field.name))
            continue
        if value is None:
            if not for_create:
                converted[field.name] = None
            continue
        converted[field.name] = value
    return errors, converted
