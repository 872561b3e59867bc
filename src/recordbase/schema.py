"""Entity and field definitions."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple


FIELD_TYPES = frozenset(
    {
        "text",
        "textarea",
        "number",
        "boolean",
        "date",
        "email",
        "url",
        "phone",
        "currency",
        "select",
        "multiselect",
        "lookup",
        "file",
        "image",
    }
)

TEXT_TYPES = frozenset({"text", "textarea", "url", "phone"})
NUMERIC_TYPES = frozenset({"number", "currency"})
REFERENCE_TYPES = frozenset({"lookup", "file", "image"})

# Keys every flat record carries in addition to its data fields.
SYSTEM_FIELDS = (
    "id",
    "created_at",
    "updated_at",
    "created_by",
    "updated_by",
    "_approval",
)

# Columns the persistence layer filters on but never exposes in data.
STORAGE_FIELDS = ("tenant_id", "entity", "deleted", "deleted_at", "deleted_by")


@dataclass(frozen=True)
class LookupTarget:
    entity: str
    label_field: str = "name"

    def to_dict(self) -> dict:
        return {"entity": self.entity, "label_field": self.label_field}


@dataclass(frozen=True)
class FieldDefinition:
    name: str
    type: str
    label: str | None = None
    required: bool = False
    options: Tuple[str, ...] | None = None
    lookup: LookupTarget | None = None

    @property
    def display_label(self) -> str:
        return self.label or self.name

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldDefinition":
        lookup = data.get("lookup")
        if isinstance(lookup, dict):
            lookup = LookupTarget(
                entity=lookup.get("entity"),
                label_field=lookup.get("label_field") or "name",
            )
        options = data.get("options")
        if options is not None:
            options = tuple(_option_value(opt) for opt in options)
        return cls(
            name=data.get("name"),
            type=data.get("type"),
            label=data.get("label"),
            required=bool(data.get("required", False)),
            options=options,
            lookup=lookup,
        )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "type": self.type,
            "label": self.label,
            "required": self.required,
            "options": list(self.options) if self.options is not None else None,
            "lookup": self.lookup.to_dict() if self.lookup else None,
        }


def _option_value(option: Any) -> str:
    if isinstance(option, dict):
        return str(option.get("value"))
    return str(option)


@dataclass(frozen=True)
class EntityDefinition:
    name: str
    fields: Tuple[FieldDefinition, ...] = field(default_factory=tuple)
    label: str | None = None

    def get_field(self, name: str) -> FieldDefinition | None:
        for item in self.fields:
            if item.name == name:
                return item
        return None

    def field_names(self) -> List[str]:
        return [item.name for item in self.fields]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EntityDefinition":
        fields = tuple(FieldDefinition.from_dict(item) for item in data.get("fields") or [])
        return cls(name=data.get("name"), fields=fields, label=data.get("label"))

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "label": self.label,
            "fields": [item.to_dict() for item in self.fields],
        }


def flat_record(doc: dict, storage: bool = False) -> dict:
    """Merge a stored document's data with its system fields.

    With ``storage=True`` the tenant, entity and deletion columns are included,
    which is the view predicates are evaluated against.
    """
    out = dict(doc.get("data") or {})
    out["id"] = doc.get("id")
    out["created_at"] = doc.get("created_at")
    out["updated_at"] = doc.get("updated_at")
    out["created_by"] = doc.get("created_by")
    out["updated_by"] = doc.get("updated_by")
    out["_approval"] = doc.get("approval")
    if storage:
        for key in STORAGE_FIELDS:
            out[key] = doc.get(key)
    return out
