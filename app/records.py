"""Record lifecycle: create, read, list, update and delete entity records.

Every operation follows the same order: authorize, compute field masks, build
the predicate (user filters AND forced permission condition AND tenant/soft
delete guard), touch the store, then enrich and mask the result. Validation and
permission errors are raised before anything is written.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from typing import Any, Dict, List

from app.access import AccessGate, ActionPermission, mask_record
from app.approvals import ApprovalInitializer, is_locked, pending_step_guard, unlocked_guard
from app.dispatch import InlineDispatcher
from app.filters import SYSTEM_FILTER_FIELDS, compile_filters
from app.populate import Populator
from app.records_validation import RefCheck, validate_record_payload
from event_bus import RECORD_CREATED, RECORD_UPDATED, EventBus, make_event
from recordbase.errors import DeadlineExceeded, InvalidOperator, NotFound, PermissionDenied, RecordLocked, UnknownField
from recordbase.predicate import Predicate, and_
from recordbase.schema import EntityDefinition, FieldDefinition, flat_record


logger = logging.getLogger("recordbase.records")

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


@dataclass
class RequestContext:
    tenant_id: str
    user_id: str | None
    # time.monotonic() value after which the request must stop touching the store
    deadline: float | None = None
    trace_id: str | None = None

    @classmethod
    def with_timeout(cls, tenant_id: str, user_id: str | None, timeout_s: float | None, trace_id: str | None = None) -> "RequestContext":
        deadline = time.monotonic() + timeout_s if timeout_s else None
        return cls(tenant_id=tenant_id, user_id=user_id, deadline=deadline, trace_id=trace_id)

    def check(self, step: str) -> None:
        if self.deadline is not None and time.monotonic() >= self.deadline:
            logger.warning("deadline_exceeded step=%s tenant_id=%s user_id=%s", step, self.tenant_id, self.user_id)
            raise DeadlineExceeded(f"request deadline exceeded before {step}", step)


def clamp_paging(page: Any, limit: Any, default_limit: int = DEFAULT_PAGE_SIZE, max_limit: int = MAX_PAGE_SIZE) -> tuple[int, int]:
    try:
        page = int(page)
    except (TypeError, ValueError):
        page = 1
    try:
        limit = int(limit)
    except (TypeError, ValueError):
        limit = default_limit
    if page < 1:
        page = 1
    if limit < 1:
        limit = default_limit
    if limit > max_limit:
        limit = max_limit
    return page, limit


def diff_values(old: Dict[str, Any], new: Dict[str, Any]) -> Dict[str, dict]:
    changes: Dict[str, dict] = {}
    for key in list(old.keys()) + [k for k in new.keys() if k not in old]:
        before = old.get(key)
        after = new.get(key)
        if before != after:
            changes[key] = {"old": before, "new": after}
    return changes


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RecordService:
    def __init__(
        self,
        registry: Any,
        record_store: Any,
        access: AccessGate,
        audit_store: Any,
        populator: Populator | None = None,
        approvals: ApprovalInitializer | None = None,
        event_bus: EventBus | None = None,
        dispatcher: Any = None,
        file_store: Any = None,
        default_page_size: int = DEFAULT_PAGE_SIZE,
        max_page_size: int = MAX_PAGE_SIZE,
    ) -> None:
        self._registry = registry
        self._records = record_store
        self._access = access
        self._audit = audit_store
        self._populator = populator
        self._approvals = approvals
        self._bus = event_bus
        self._dispatcher = dispatcher or InlineDispatcher()
        self._files = file_store
        self._default_page_size = default_page_size
        self._max_page_size = max_page_size

    # -- shared steps

    def _guard(self, ctx: RequestContext) -> Predicate:
        return {"tenant_id": ctx.tenant_id, "deleted": {"$ne": True}}

    def _entity(self, name: str) -> EntityDefinition:
        return self._registry.find_entity(name)

    def _forced(self, ctx: RequestContext, permission: ActionPermission) -> Predicate:
        if not permission.condition:
            return {}
        return self._access.forced_predicate(permission, self._access.context(ctx.user_id))

    def _ref_checker(self, ctx: RequestContext) -> RefCheck:
        def exists(field: FieldDefinition, ref_id: str) -> bool:
            ctx.check("reference_check")
            if field.type == "lookup":
                if field.lookup is None:
                    return True
                found = self._records.find_one(field.lookup.entity, and_(self._guard(ctx), {"id": ref_id}))
                return found is not None
            if self._files is None:
                return True
            return self._files.get(ctx.tenant_id, ref_id) is not None

        return exists

    def _present(self, ctx: RequestContext, entity: EntityDefinition, docs: List[dict], mask: Dict[str, str]) -> List[dict]:
        records = [flat_record(doc) for doc in docs]
        if self._populator is not None:
            records = self._populator.populate(ctx.tenant_id, entity, records)
        return [mask_record(record, mask) for record in records]

    def _load(self, ctx: RequestContext, entity: EntityDefinition, record_id: str, forced: Predicate) -> dict:
        ctx.check("read")
        doc = self._records.find_one(entity.name, and_(self._guard(ctx), {"id": record_id}, forced))
        if doc is None:
            raise NotFound(f"record '{record_id}' not found in {entity.name}", "id")
        return doc

    def _diagnose_failed_write(self, ctx: RequestContext, entity: EntityDefinition, record_id: str) -> Exception:
        doc = self._records.find_one(entity.name, and_(self._guard(ctx), {"id": record_id}))
        if doc is not None and is_locked(doc.get("approval")):
            logger.info("record_locked entity=%s record_id=%s", entity.name, record_id)
            return RecordLocked(record_id)
        return NotFound(f"record '{record_id}' not found in {entity.name}", "id")

    def _notify(self, ctx: RequestContext, event_name: str, entity: EntityDefinition, record: dict, changes: dict) -> None:
        if self._bus is None:
            return
        meta = {
            "tenant_id": ctx.tenant_id,
            "entity": entity.name,
            "schema_hash": self._registry.current_hash(entity.name) if hasattr(self._registry, "current_hash") else None,
            "actor": {"id": ctx.user_id} if ctx.user_id else None,
            "trace_id": ctx.trace_id,
        }
        payload = {"record_id": record["id"], "record": record, "changes": changes}
        task = partial(self._publish, event_name, payload, meta)
        self._dispatcher.submit(task, name=event_name)

    def _publish(self, event_name: str, payload: dict, meta: dict) -> None:
        self._bus.publish(make_event(event_name, payload, meta))

    # -- operations

    def create(self, ctx: RequestContext, entity_name: str, payload: dict) -> dict:
        entity = self._entity(entity_name)
        self._access.authorize(ctx.user_id, entity.name, "create")
        mask = self._access.field_mask(ctx.user_id, entity)
        errors, data = validate_record_payload(entity, payload, True, mask, self._ref_checker(ctx))
        if errors:
            raise errors[0]

        now = _now()
        doc = {
            "id": str(uuid.uuid4()),
            "tenant_id": ctx.tenant_id,
            "entity": entity.name,
            "data": data,
            "approval": None,
            "created_at": now,
            "updated_at": now,
            "created_by": ctx.user_id,
            "updated_by": ctx.user_id,
            "deleted": False,
            "deleted_at": None,
            "deleted_by": None,
        }
        if self._approvals is not None:
            ctx.check("approval")
            doc["approval"] = self._approvals.initialize(ctx.tenant_id, entity.name, flat_record(doc))

        ctx.check("create")
        doc = self._records.create(doc)
        changes = {name: {"old": None, "new": value} for name, value in data.items()}
        self._audit.log_change(ctx.tenant_id, "CREATE", entity.name, doc["id"], ctx.user_id, changes)
        logger.info(
            "record_created entity=%s record_id=%s tenant_id=%s actor=%s pending=%s",
            entity.name,
            doc["id"],
            ctx.tenant_id,
            ctx.user_id,
            is_locked(doc.get("approval")),
        )
        self._notify(ctx, RECORD_CREATED, entity, flat_record(doc), changes)
        return self._present(ctx, entity, [doc], mask)[0]

    def get(self, ctx: RequestContext, entity_name: str, record_id: str) -> dict:
        entity = self._entity(entity_name)
        permission = self._access.authorize(ctx.user_id, entity.name, "read")
        mask = self._access.field_mask(ctx.user_id, entity)
        doc = self._load(ctx, entity, record_id, self._forced(ctx, permission))
        return self._present(ctx, entity, [doc], mask)[0]

    def _sort_field(self, entity: EntityDefinition, sort_by: str | None, mask: Dict[str, str]) -> str:
        if not sort_by:
            return "created_at"
        if sort_by == "id" or sort_by in SYSTEM_FILTER_FIELDS:
            return sort_by
        if entity.get_field(sort_by) is None:
            raise UnknownField(sort_by, "sort_by")
        if mask.get(sort_by) == "none":
            raise PermissionDenied(f"sorting on '{sort_by}' is not allowed", "sort_by")
        return sort_by

    def list(
        self,
        ctx: RequestContext,
        entity_name: str,
        filters: List[dict] | None = None,
        page: Any = 1,
        limit: Any = None,
        sort_by: str | None = None,
        sort_order: str | None = None,
        action: str = "read",
    ) -> dict:
        entity = self._entity(entity_name)
        permission = self._access.authorize(ctx.user_id, entity.name, action)
        mask = self._access.field_mask(ctx.user_id, entity)
        self._access.check_filters(permission, filters, entity.name, mask)
        predicate = and_(self._guard(ctx), compile_filters(entity, filters))
        forced = self._forced(ctx, permission)

        page, limit = clamp_paging(
            page, limit if limit is not None else self._default_page_size, self._default_page_size, self._max_page_size
        )
        sort_field = self._sort_field(entity, sort_by, mask)
        order = "asc" if (sort_order or "").lower() == "asc" else "desc"

        ctx.check("count")
        total = self._records.count(entity.name, predicate, forced)
        ctx.check("find")
        docs = self._records.find(
            entity.name,
            predicate,
            forced,
            limit=limit,
            offset=(page - 1) * limit,
            sort_by=sort_field,
            sort_order=order,
        )
        return {
            "records": self._present(ctx, entity, docs, mask),
            "total": total,
            "page": page,
            "limit": limit,
        }

    def update(self, ctx: RequestContext, entity_name: str, record_id: str, payload: dict) -> dict:
        entity = self._entity(entity_name)
        permission = self._access.authorize(ctx.user_id, entity.name, "update")
        mask = self._access.field_mask(ctx.user_id, entity)
        forced = self._forced(ctx, permission)
        current = self._load(ctx, entity, record_id, forced)
        if is_locked(current.get("approval")):
            logger.info("record_locked entity=%s record_id=%s action=update", entity.name, record_id)
            raise RecordLocked(record_id)

        errors, data = validate_record_payload(entity, payload, False, mask, self._ref_checker(ctx))
        if errors:
            raise errors[0]

        ctx.check("update")
        guard = and_(self._guard(ctx), {"id": record_id}, unlocked_guard(), forced)
        stamps = {"updated_at": _now(), "updated_by": ctx.user_id}
        result = self._records.update(entity.name, record_id, data, stamps, guard)
        if result is None:
            raise self._diagnose_failed_write(ctx, entity, record_id)
        before, after = result

        changes = diff_values(before.get("data") or {}, after.get("data") or {})
        self._audit.log_change(ctx.tenant_id, "UPDATE", entity.name, record_id, ctx.user_id, changes)
        logger.info(
            "record_updated entity=%s record_id=%s tenant_id=%s actor=%s fields=%s",
            entity.name,
            record_id,
            ctx.tenant_id,
            ctx.user_id,
            ",".join(sorted(changes.keys())),
        )
        self._notify(ctx, RECORD_UPDATED, entity, flat_record(after), changes)
        return self._present(ctx, entity, [after], mask)[0]

    def delete(self, ctx: RequestContext, entity_name: str, record_id: str) -> None:
        entity = self._entity(entity_name)
        permission = self._access.authorize(ctx.user_id, entity.name, "delete")
        forced = self._forced(ctx, permission)
        current = self._load(ctx, entity, record_id, forced)
        if is_locked(current.get("approval")):
            logger.info("record_locked entity=%s record_id=%s action=delete", entity.name, record_id)
            raise RecordLocked(record_id)

        ctx.check("delete")
        guard = and_(self._guard(ctx), {"id": record_id}, unlocked_guard(), forced)
        doc = self._records.soft_delete(entity.name, record_id, ctx.user_id, _now(), guard)
        if doc is None:
            raise self._diagnose_failed_write(ctx, entity, record_id)
        self._audit.log_change(ctx.tenant_id, "DELETE", entity.name, record_id, ctx.user_id, {})
        logger.info("record_deleted entity=%s record_id=%s tenant_id=%s actor=%s", entity.name, record_id, ctx.tenant_id, ctx.user_id)

    def decide_approval(self, ctx: RequestContext, entity_name: str, record_id: str, action: str, comment: str | None = None) -> dict:
        """Approve or reject the current step of a pending record."""
        if self._approvals is None:
            raise NotFound("approvals are not configured", "approval")
        entity = self._entity(entity_name)
        permission = self._access.authorize(ctx.user_id, entity.name, "update")
        mask = self._access.field_mask(ctx.user_id, entity)
        forced = self._forced(ctx, permission)
        current = self._load(ctx, entity, record_id, forced)
        if not is_locked(current.get("approval")):
            raise NotFound("record has no pending approval", "approval")
        try:
            state = self._approvals.decide(current["approval"], ctx.user_id, action, comment)
        except ValueError as exc:
            raise InvalidOperator(str(exc), "action")
        ctx.check("approval")
        guard = and_(self._guard(ctx), {"id": record_id}, pending_step_guard(current["approval"]), forced)
        doc = self._records.set_approval(entity.name, record_id, state, guard)
        if doc is None:
            if self._records.find_one(entity.name, and_(self._guard(ctx), {"id": record_id})) is None:
                raise NotFound(f"record '{record_id}' not found in {entity.name}", "id")
            logger.info("approval_conflict entity=%s record_id=%s step=%s", entity.name, record_id, current["approval"].get("current_step"))
            raise NotFound("approval step was already decided", "approval")
        changes = {"_approval.status": {"old": current["approval"].get("status"), "new": state.get("status")}}
        self._audit.log_change(ctx.tenant_id, "APPROVAL", entity.name, record_id, ctx.user_id, changes)
        return self._present(ctx, entity, [doc], mask)[0]
