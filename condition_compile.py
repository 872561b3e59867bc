"""Compile permission conditions into record predicates.

Two input forms are accepted and produce the same predicate dialect as the
filter compiler (see ``recordbase.predicate``):

- operator tree: ``{"op": "and"|"or"|"not", "children": [...]}`` and comparisons
  ``{"op": "eq", "field": "owner_id", "value": {"var": "user.id"}}``
- rule group: ``{"operator": "AND"|"OR", "rules": [{"field", "operator", "value",
  "type"}], "groups": [...]}``

Variables are resolved from a per-request context, never from record data, so
compiling is independent of the store that later evaluates the predicate.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List

from recordbase.predicate import Predicate, and_, not_, or_


@dataclass
class ConditionCompileError(Exception):
    code: str
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


class ConditionSchemaError(ConditionCompileError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__("CONDITION_SCHEMA_ERROR", message, path)


class ConditionDepthError(ConditionCompileError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__("CONDITION_DEPTH_EXCEEDED", message, path)


class VarResolveError(ConditionCompileError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__("CONDITION_VAR_UNRESOLVED", message, path)


class TypeErrorInCondition(ConditionCompileError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__("CONDITION_TYPE_ERROR", message, path)


class UnknownOpError(ConditionCompileError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__("CONDITION_UNKNOWN_OP", message, path)


_OP_ALIASES = {
    "eq": "eq",
    "equals": "eq",
    "ne": "ne",
    "neq": "ne",
    "gt": "gt",
    "gte": "gte",
    "lt": "lt",
    "lte": "lte",
    "in": "in",
    "nin": "nin",
    "not_in": "nin",
    "contains": "contains",
    "startsWith": "starts_with",
    "starts_with": "starts_with",
    "endsWith": "ends_with",
    "ends_with": "ends_with",
    "exists": "exists",
    "not_exists": "not_exists",
}


def build_context(
    user_id: str | None,
    tenant_id: str | None = None,
    roles: List[str] | None = None,
    path: str | None = None,
    now: datetime | None = None,
) -> dict:
    """Variable table for one request."""
    return {
        "user": {
            "id": user_id,
            "tenant_id": tenant_id,
            "roles": list(roles or []),
            "path": path,
        },
        "now": now or datetime.now(timezone.utc),
    }


def _depth_check(depth: int, limit: int, path: str) -> None:
    if depth > limit:
        raise ConditionDepthError("Depth limit exceeded", path)


def _resolve_var(ctx: dict, name: str, path: str) -> Any:
    if name in ctx:
        return ctx[name]
    current: Any = ctx
    for part in name.split("."):
        if not isinstance(current, dict) or part not in current:
            raise VarResolveError(f"Unresolved var: {name}", path)
        current = current[part]
    return current


def _ensure_finite(value: Any, path: str) -> None:
    if isinstance(value, float) and not math.isfinite(value):
        raise TypeErrorInCondition("Non-finite number", path)


def _resolve_value(node: Any, ctx: dict, path: str, depth: int, limit: int, allow_dollar: bool = True) -> Any:
    _depth_check(depth, limit, path)
    if isinstance(node, str) and allow_dollar and node.startswith("$"):
        return _resolve_var(ctx, node[1:], path)
    if isinstance(node, dict):
        if "var" in node:
            if not isinstance(node["var"], str):
                raise ConditionSchemaError("var must be string", path)
            return _resolve_var(ctx, node["var"], path)
        if "literal" in node:
            return node["literal"]
        if "array" in node:
            arr = node["array"]
            if not isinstance(arr, list):
                raise ConditionSchemaError("array must be list", path)
            return [
                _resolve_value(item, ctx, f"{path}.array[{idx}]", depth + 1, limit)
                for idx, item in enumerate(arr)
            ]
        raise ConditionSchemaError("Invalid value node", path)
    if isinstance(node, list):
        return [
            _resolve_value(item, ctx, f"{path}[{idx}]", depth + 1, limit, allow_dollar)
            for idx, item in enumerate(node)
        ]
    _ensure_finite(node, path)
    return node


def _comparison(field: Any, op: Any, value: Any, path: str) -> Predicate:
    if not isinstance(field, str) or not field:
        raise ConditionSchemaError("field must be non-empty string", f"{path}.field")
    canonical = _OP_ALIASES.get(op) if isinstance(op, str) else None
    if canonical is None:
        raise UnknownOpError(f"Unknown op: {op}", path)
    if canonical == "eq":
        return {field: {"$eq": value}}
    if canonical in {"ne", "gt", "gte", "lt", "lte"}:
        return {field: {f"${canonical}": value}}
    if canonical in {"in", "nin"}:
        if not isinstance(value, list):
            value = [value]
        return {field: {f"${canonical}": value}}
    if canonical in {"exists", "not_exists"}:
        return {field: {"$exists": canonical == "exists"}}
    if not isinstance(value, str):
        raise TypeErrorInCondition(f"{op} requires string value", f"{path}.value")
    pattern = re.escape(value)
    if canonical == "starts_with":
        pattern = "^" + pattern
    elif canonical == "ends_with":
        pattern = pattern + "$"
    return {field: {"$regex": pattern, "$options": "i"}}


def compile_condition(cond: dict | None, ctx: dict, depth_limit: int = 10) -> Predicate:
    """Compile ``cond`` to a predicate; ``None`` or an empty group compiles to ``{}``."""
    if cond is None:
        return {}
    if not isinstance(ctx, dict):
        raise ConditionSchemaError("ctx must be object", "$")
    return _compile(cond, ctx, "$", 1, depth_limit)


def is_unrestricted(cond: Any) -> bool:
    """Whether ``cond`` compiles to ``{}`` for every variable context."""
    if not cond:
        return True
    if not isinstance(cond, dict):
        return False
    if "op" in cond:
        children = cond.get("children")
        if cond.get("op") not in {"and", "or"} or not isinstance(children, list):
            return False
        if cond.get("op") == "and":
            return all(is_unrestricted(child) for child in children)
        return any(is_unrestricted(child) for child in children)
    rules = cond.get("rules") or []
    groups = cond.get("groups") or []
    if not isinstance(rules, list) or not isinstance(groups, list):
        return False
    operator = cond.get("operator") or "AND"
    if not isinstance(operator, str):
        return False
    if operator.upper() == "OR":
        return (not rules and not groups) or any(is_unrestricted(sub) for sub in groups)
    return operator.upper() == "AND" and not rules and all(is_unrestricted(sub) for sub in groups)


def _compile(cond: Any, ctx: dict, path: str, depth: int, limit: int) -> Predicate:
    _depth_check(depth, limit, path)
    if not isinstance(cond, dict):
        raise ConditionSchemaError("Condition must be object", path)
    if "op" in cond:
        return _compile_tree(cond, ctx, path, depth, limit)
    if "rules" in cond or "groups" in cond or "operator" in cond:
        return _compile_group(cond, ctx, path, depth, limit)
    if not cond:
        return {}
    raise ConditionSchemaError("Missing op", path)


def _compile_tree(cond: dict, ctx: dict, path: str, depth: int, limit: int) -> Predicate:
    op = cond.get("op")
    if op in {"and", "or"}:
        children = cond.get("children")
        if not isinstance(children, list):
            raise ConditionSchemaError("children must be list", f"{path}.children")
        parts = [
            _compile(child, ctx, f"{path}.children[{i}]", depth + 1, limit)
            for i, child in enumerate(children)
        ]
        if op == "or":
            if not parts:
                # or over nothing is unsatisfiable
                return {"id": {"$in": []}}
            if any(not part for part in parts):
                return {}
            return or_(*parts)
        return and_(*parts)
    if op == "not":
        children = cond.get("children")
        if not isinstance(children, list) or len(children) != 1:
            raise ConditionSchemaError("not requires single child", f"{path}.children")
        inner = _compile(children[0], ctx, f"{path}.children[0]", depth + 1, limit)
        return not_(inner)
    if "field" not in cond:
        raise ConditionSchemaError("Missing required field: field", path)
    value = None
    if "value" in cond:
        value = _resolve_value(cond.get("value"), ctx, f"{path}.value", depth + 1, limit)
    return _comparison(cond.get("field"), op, value, path)


def _compile_group(group: dict, ctx: dict, path: str, depth: int, limit: int) -> Predicate:
    rules = group.get("rules") or []
    groups = group.get("groups") or []
    if not isinstance(rules, list):
        raise ConditionSchemaError("rules must be list", f"{path}.rules")
    if not isinstance(groups, list):
        raise ConditionSchemaError("groups must be list", f"{path}.groups")
    operator = group.get("operator") or "AND"
    if not isinstance(operator, str) or operator.upper() not in {"AND", "OR"}:
        raise UnknownOpError(f"Unknown group operator: {operator}", f"{path}.operator")

    parts: List[Predicate] = []
    for idx, rule in enumerate(rules):
        rule_path = f"{path}.rules[{idx}]"
        if not isinstance(rule, dict):
            raise ConditionSchemaError("rule must be object", rule_path)
        raw = rule.get("value")
        if rule.get("type") == "variable":
            value = _resolve_value(raw, ctx, f"{rule_path}.value", depth + 1, limit)
        else:
            value = _resolve_value(raw, ctx, f"{rule_path}.value", depth + 1, limit, allow_dollar=False)
        parts.append(_comparison(rule.get("field"), rule.get("operator"), value, rule_path))
    for idx, sub in enumerate(groups):
        compiled = _compile(sub, ctx, f"{path}.groups[{idx}]", depth + 1, limit)
        if not compiled and operator.upper() == "OR":
            return {}
        if compiled:
            parts.append(compiled)

    if not parts:
        return {}
    return or_(*parts) if operator.upper() == "OR" else and_(*parts)
