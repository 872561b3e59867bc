"""Automation trigger matching for record events."""

from __future__ import annotations

from typing import Any

from recordbase.predicate import Predicate, and_, matches

_OPS = {
    "neq": "$ne",
    "gt": "$gt",
    "gte": "$gte",
    "lt": "$lt",
    "lte": "$lte",
    "in": "$in",
    "not_in": "$nin",
}


def _filter_predicate(filt: Any) -> Predicate | None:
    if not isinstance(filt, dict):
        return None
    path = filt.get("path")
    op = filt.get("op")
    if not isinstance(path, str) or not path or not isinstance(op, str):
        return None
    value = filt.get("value")
    if op == "eq":
        return {path: {"$eq": value}}
    if op == "exists":
        return {path: {"$exists": True}}
    if op == "changed":
        # update events carry {field: {"old", "new"}} under "changes"
        return {f"changes.{path.split('.')[-1]}": {"$exists": True}}
    if op in ("in", "not_in") and not isinstance(value, list):
        return None
    if op in _OPS:
        return {path: {_OPS[op]: value}}
    return None


def trigger_predicate(trigger: dict) -> Predicate | None:
    """Compile trigger filters into one predicate over the event payload.

    Returns ``None`` when any filter is malformed; such a trigger never fires.
    """
    filters = trigger.get("filters") or []
    if not isinstance(filters, list):
        return None
    parts = []
    for filt in filters:
        predicate = _filter_predicate(filt)
        if predicate is None:
            return None
        parts.append(predicate)
    return and_(*parts)


def match_event(trigger: dict, event_type: str, payload: dict, entity: str | None = None) -> bool:
    """Whether an automation trigger fires for a record event.

    Filters address the event payload, e.g. ``{"path": "record.status", "op": "eq",
    "value": "won"}``; ``changed`` tests whether an update touched the field.
    """
    if not isinstance(trigger, dict) or trigger.get("kind") != "event":
        return False
    event_types = trigger.get("event_types")
    if not isinstance(event_types, list) or event_type not in event_types:
        return False
    if trigger.get("entity") and trigger.get("entity") != entity:
        return False
    predicate = trigger_predicate(trigger)
    if predicate is None:
        return False
    return matches(predicate, payload)
