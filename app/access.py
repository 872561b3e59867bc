"""Action and field-level access control for entity records."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from condition_compile import ConditionCompileError, build_context, compile_condition, is_unrestricted
from recordbase.errors import InternalError, PermissionDenied
from recordbase.predicate import Predicate
from recordbase.schema import EntityDefinition


logger = logging.getLogger("recordbase.access")

ACTIONS = ("create", "read", "update", "delete")
WILDCARD = "*"

READ_WRITE = "read_write"
READ_ONLY = "read_only"
NONE = "none"
_RULE_RANK = {NONE: 0, READ_ONLY: 1, READ_WRITE: 2}


@dataclass
class ActionPermission:
    allowed: bool = False
    condition: dict | None = None
    # None means the grant never defined a whitelist
    ui_filters: List[str] | None = None
    field_rules: Dict[str, str] | None = field(default_factory=dict)


def _merge_rules(current: Dict[str, str], incoming: Dict[str, str]) -> None:
    for name, rule in incoming.items():
        if rule not in _RULE_RANK:
            continue
        if name not in current or _RULE_RANK[rule] > _RULE_RANK[current[name]]:
            current[name] = rule


def merge_grants(grants: List[dict], action: str) -> ActionPermission:
    """Union of grants, most permissive wins.

    An action allowed without a condition beats a conditional one; conditional
    grants are OR-ed. Field rules merge read_write > read_only > none, and a
    grant without field rules opens every field.
    """
    unconditional = False
    conditions: List[dict] = []
    ui_filters: List[str] | None = None
    field_rules: Dict[str, str] | None = {}
    for grant in grants:
        rules = grant.get("field_rules")
        if rules is None:
            field_rules = None
        elif field_rules is not None:
            _merge_rules(field_rules, rules)

        entry = (grant.get("actions") or {}).get(action)
        if not isinstance(entry, dict) or not entry.get("allowed"):
            continue
        cond = entry.get("condition")
        if not is_unrestricted(cond):
            conditions.append(cond)
        else:
            unconditional = True
        wl = entry.get("ui_filters")
        if isinstance(wl, list):
            ui_filters = list(dict.fromkeys((ui_filters or []) + [f for f in wl if isinstance(f, str)]))

    allowed = unconditional or bool(conditions)
    condition = None
    if not unconditional and conditions:
        condition = conditions[0] if len(conditions) == 1 else {"op": "or", "children": conditions}
    return ActionPermission(allowed=allowed, condition=condition, ui_filters=ui_filters, field_rules=field_rules)


class AccessGate:
    def __init__(self, permission_store: Any, depth_limit: int = 10) -> None:
        self._store = permission_store
        self._depth_limit = depth_limit

    def _user(self, user_id: str | None) -> dict:
        user = self._store.get_user(user_id) if user_id else None
        if user is None:
            logger.info("permission_denied user_id=%s reason=unknown_user", user_id)
            raise PermissionDenied("unknown user", "user_id")
        return user

    def _grants(self, user: dict, entity: str) -> List[dict]:
        principals = [user["id"]] + list(user.get("roles") or []) + list(user.get("groups") or [])
        grants = self._store.list_grants(principals, [entity, WILDCARD])
        specific = [g for g in grants if g.get("resource") == entity]
        return specific or [g for g in grants if g.get("resource") == WILDCARD]

    def resolve(self, user_id: str | None, entity: str, action: str) -> ActionPermission:
        user = self._user(user_id)
        return merge_grants(self._grants(user, entity), action)

    def authorize(self, user_id: str | None, entity: str, action: str) -> ActionPermission:
        permission = self.resolve(user_id, entity, action)
        if not permission.allowed:
            logger.info("permission_denied user_id=%s entity=%s action=%s reason=not_allowed", user_id, entity, action)
            raise PermissionDenied(f"permission denied for {action} on {entity}", "action")
        return permission

    def field_mask(self, user_id: str | None, entity: EntityDefinition) -> Dict[str, str]:
        """Visibility of every declared field for this user."""
        user = self._user(user_id)
        rules = merge_grants(self._grants(user, entity.name), "read").field_rules
        if rules is None:
            return {f.name: READ_WRITE for f in entity.fields}
        return {f.name: rules.get(f.name, READ_WRITE) for f in entity.fields}

    def check_filters(
        self,
        permission: ActionPermission,
        filters: List[dict] | None,
        entity: str = "",
        field_mask: Dict[str, str] | None = None,
    ) -> None:
        """Default-deny: only whitelisted fields may be filtered on, and never a hidden one."""
        if not filters:
            return
        allowed = set(permission.ui_filters or [])
        for idx, raw in enumerate(filters):
            name = raw.get("field") if isinstance(raw, dict) else None
            if name not in allowed or (field_mask or {}).get(name) == NONE:
                logger.info("permission_denied entity=%s filter=%s reason=filter_not_allowed", entity, name)
                raise PermissionDenied(
                    f"filtering on '{name}' is not allowed", f"filters[{idx}].field", {"field": name}
                )

    def context(self, user_id: str | None) -> dict:
        user = self._user(user_id)
        return build_context(
            user.get("id"),
            tenant_id=user.get("tenant_id"),
            roles=user.get("roles"),
            path=user.get("path"),
        )

    def forced_predicate(self, permission: ActionPermission, ctx: dict) -> Predicate:
        if not permission.condition:
            return {}
        try:
            return compile_condition(permission.condition, ctx, self._depth_limit)
        except ConditionCompileError as exc:
            logger.error("condition_compile_failed code=%s path=%s message=%s", exc.code, exc.path, exc.message)
            raise InternalError("permission condition could not be compiled", exc.path, {"code": exc.code})


def mask_record(record: dict, field_mask: Dict[str, str]) -> dict:
    return {key: value for key, value in record.items() if field_mask.get(key) != NONE}
