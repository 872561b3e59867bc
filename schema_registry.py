"""In-memory entity schema registry with definition versions and audit."""

from __future__ import annotations

import copy
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List

from recordbase.errors import NotFound
from recordbase.schema import FIELD_TYPES, SYSTEM_FIELDS, STORAGE_FIELDS, EntityDefinition
from recordbase.schema_hash import schema_hash


Issue = Dict[str, Any]


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def validate_definition(definition: dict) -> List[Issue]:
    errors: List[Issue] = []
    if not isinstance(definition, dict):
        return [_issue("SCHEMA_INVALID", "definition must be an object", "definition")]
    name = definition.get("name")
    if not isinstance(name, str) or not name:
        errors.append(_issue("SCHEMA_INVALID", "name must be non-empty string", "name"))
    fields = definition.get("fields")
    if not isinstance(fields, list):
        errors.append(_issue("SCHEMA_INVALID", "fields must be a list", "fields"))
        return errors
    seen: set[str] = set()
    reserved = set(SYSTEM_FIELDS) | set(STORAGE_FIELDS)
    for idx, field in enumerate(fields):
        path = f"fields[{idx}]"
        if not isinstance(field, dict):
            errors.append(_issue("SCHEMA_INVALID", "field must be an object", path))
            continue
        fname = field.get("name")
        if not isinstance(fname, str) or not fname:
            errors.append(_issue("SCHEMA_INVALID", "field name must be non-empty string", f"{path}.name"))
            continue
        if fname in seen:
            errors.append(_issue("SCHEMA_DUPLICATE_FIELD", f"duplicate field '{fname}'", f"{path}.name"))
        seen.add(fname)
        if fname in reserved or "." in fname or fname.startswith("$"):
            errors.append(_issue("SCHEMA_RESERVED_FIELD", f"field name '{fname}' is reserved", f"{path}.name"))
        ftype = field.get("type")
        if ftype not in FIELD_TYPES:
            errors.append(_issue("SCHEMA_UNKNOWN_TYPE", f"unknown field type '{ftype}'", f"{path}.type"))
        if ftype in {"select", "multiselect"}:
            options = field.get("options")
            if options is not None and not isinstance(options, list):
                errors.append(_issue("SCHEMA_INVALID", "options must be a list", f"{path}.options"))
        if ftype == "lookup":
            lookup = field.get("lookup")
            if not isinstance(lookup, dict) or not isinstance(lookup.get("entity"), str):
                errors.append(_issue("SCHEMA_LOOKUP_INVALID", "lookup.entity is required", f"{path}.lookup"))
    return errors


class SchemaRegistry:
    """Entity definitions keyed by name.

    Parsed definitions are cached as frozen dataclasses, so callers can hold one
    for the length of a request without seeing concurrent edits.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entities: Dict[str, EntityDefinition] = {}
        self._hashes: Dict[str, str] = {}
        self._versions: Dict[str, List[dict]] = {}
        self._audit: Dict[str, List[dict]] = {}

    def find_entity(self, name: str) -> EntityDefinition:
        entity = self._entities.get(name)
        if entity is None:
            raise NotFound(f"entity '{name}' not found", "entity")
        return entity

    def get(self, name: str) -> EntityDefinition | None:
        return self._entities.get(name)

    def current_hash(self, name: str) -> str | None:
        return self._hashes.get(name)

    def list(self) -> list[EntityDefinition]:
        return [self._entities[name] for name in sorted(self._entities.keys())]

    def history(self, name: str) -> list[dict]:
        return copy.deepcopy(self._audit.get(name, []))

    def list_versions(self, name: str) -> list[dict]:
        return copy.deepcopy(self._versions.get(name, []))

    def upsert(self, definition: dict, actor: dict | None = None, reason: str | None = None) -> dict:
        errors = validate_definition(definition)
        warnings: List[Issue] = []
        if errors:
            return {"ok": False, "errors": errors, "warnings": warnings, "entity": None, "schema_hash": None}

        entity = EntityDefinition.from_dict(definition)
        to_hash = schema_hash(entity)
        with self._lock:
            from_hash = self._hashes.get(entity.name)
            if from_hash == to_hash:
                warnings.append(_issue("SCHEMA_UNCHANGED", "definition unchanged", "definition"))
                return {"ok": True, "errors": errors, "warnings": warnings, "entity": entity, "schema_hash": to_hash}
            self._entities[entity.name] = entity
            self._hashes[entity.name] = to_hash
            versions = self._versions.setdefault(entity.name, [])
            versions.append(
                {
                    "version_id": str(uuid.uuid4()),
                    "version_num": len(versions) + 1,
                    "schema_hash": to_hash,
                    "definition": entity.to_dict(),
                    "created_at": _now(),
                    "created_by": copy.deepcopy(actor) if actor else None,
                }
            )
            self._audit.setdefault(entity.name, []).insert(
                0,
                {
                    "audit_id": str(uuid.uuid4()),
                    "entity": entity.name,
                    "action": "create" if from_hash is None else "update",
                    "from_hash": from_hash,
                    "to_hash": to_hash,
                    "actor": actor,
                    "reason": reason,
                    "at": _now(),
                },
            )
        return {"ok": True, "errors": errors, "warnings": warnings, "entity": entity, "schema_hash": to_hash}
