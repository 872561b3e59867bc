"""Store-agnostic query predicates.

A predicate is a document-store style dict:

- ``{"field": value}`` equality
- ``{"field": {"$ne"|"$gt"|"$gte"|"$lt"|"$lte"|"$in"|"$nin"|"$exists": value}}``
- ``{"field": {"$regex": pattern, "$options": "i"}}``
- ``{"$and": [...]}``, ``{"$or": [...]}``, ``{"$nor": [...]}``

Field names may be dotted paths into nested objects. The empty predicate matches
every document.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List


Predicate = Dict[str, Any]

LOGICAL_OPS = ("$and", "$or", "$nor")
FIELD_OPS = ("$eq", "$ne", "$gt", "$gte", "$lt", "$lte", "$in", "$nin", "$exists", "$regex", "$options")

MISSING = object()


class PredicateError(ValueError):
    pass


def and_(*predicates: Predicate | None) -> Predicate:
    """Intersect predicates, dropping empty ones."""
    parts: List[Predicate] = [p for p in predicates if p]
    if not parts:
        return {}
    if len(parts) == 1:
        return parts[0]
    return {"$and": parts}


def or_(*predicates: Predicate) -> Predicate:
    parts = list(predicates)
    if len(parts) == 1:
        return parts[0]
    return {"$or": parts}


def not_(predicate: Predicate) -> Predicate:
    return {"$nor": [predicate]}


def resolve_path(doc: Any, path: str) -> Any:
    current = doc
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return MISSING
        current = current[part]
    return current


def _is_operator_dict(value: Any) -> bool:
    return isinstance(value, dict) and bool(value) and all(
        isinstance(key, str) and key.startswith("$") for key in value
    )


def _equals(actual: Any, expected: Any) -> bool:
    if actual is MISSING:
        return expected is None
    if isinstance(actual, list) and not isinstance(expected, list):
        return any(_scalar_equals(item, expected) for item in actual)
    return _scalar_equals(actual, expected)


def _scalar_equals(actual: Any, expected: Any) -> bool:
    if isinstance(actual, bool) or isinstance(expected, bool):
        return type(actual) is type(expected) and actual == expected
    return actual == expected


def _compare(actual: Any, expected: Any, op: str) -> bool:
    if actual is MISSING or actual is None or expected is None:
        return False
    if isinstance(actual, list):
        return any(_compare(item, expected, op) for item in actual)
    if isinstance(actual, bool) or isinstance(expected, bool):
        return False
    try:
        if op == "$gt":
            return actual > expected
        if op == "$gte":
            return actual >= expected
        if op == "$lt":
            return actual < expected
        return actual <= expected
    except TypeError:
        return False


def _in(actual: Any, values: Iterable[Any]) -> bool:
    values = list(values)
    if actual is MISSING:
        return None in values
    if isinstance(actual, list):
        return any(_scalar_equals(item, v) for item in actual for v in values)
    return any(_scalar_equals(actual, v) for v in values)


def _regex(actual: Any, pattern: str, options: str) -> bool:
    flags = re.IGNORECASE if "i" in (options or "") else 0
    if isinstance(actual, list):
        return any(_regex(item, pattern, options) for item in actual)
    if not isinstance(actual, str):
        return False
    return re.search(pattern, actual, flags) is not None


def _match_field(doc: Any, path: str, condition: Any) -> bool:
    actual = resolve_path(doc, path)
    if not _is_operator_dict(condition):
        return _equals(actual, condition)
    for op, expected in condition.items():
        if op == "$options":
            continue
        if op == "$eq":
            ok = _equals(actual, expected)
        elif op == "$ne":
            ok = not _equals(actual, expected)
        elif op in {"$gt", "$gte", "$lt", "$lte"}:
            ok = _compare(actual, expected, op)
        elif op == "$in":
            if not isinstance(expected, list):
                raise PredicateError(f"$in requires a list at {path}")
            ok = _in(actual, expected)
        elif op == "$nin":
            if not isinstance(expected, list):
                raise PredicateError(f"$nin requires a list at {path}")
            ok = not _in(actual, expected)
        elif op == "$exists":
            present = actual is not MISSING and actual is not None
            ok = present if expected else not present
        elif op == "$regex":
            ok = _regex(actual, expected, condition.get("$options", ""))
        else:
            raise PredicateError(f"unknown operator {op} at {path}")
        if not ok:
            return False
    return True


def matches(predicate: Predicate | None, doc: dict) -> bool:
    """Evaluate ``predicate`` against ``doc`` in memory."""
    if not predicate:
        return True
    if not isinstance(predicate, dict):
        raise PredicateError("predicate must be an object")
    for key, value in predicate.items():
        if key == "$and":
            if not all(matches(item, doc) for item in value):
                return False
        elif key == "$or":
            if not any(matches(item, doc) for item in value):
                return False
        elif key == "$nor":
            if any(matches(item, doc) for item in value):
                return False
        elif key.startswith("$"):
            raise PredicateError(f"unknown logical operator {key}")
        elif not _match_field(doc, key, value):
            return False
    return True
