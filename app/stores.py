"""In-memory stores for the record engine and its collaborators."""

from __future__ import annotations

import copy
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List

from recordbase.predicate import MISSING, Predicate, and_, matches, resolve_path
from recordbase.schema import flat_record


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _sort_key(value: Any) -> tuple:
    if value is None or value is MISSING:
        return (0, 0)
    if isinstance(value, bool):
        return (4, value)
    if isinstance(value, (int, float)):
        return (1, value)
    if isinstance(value, str):
        return (2, value)
    if isinstance(value, datetime):
        return (3, value)
    return (5, str(value))


class MemoryRecordStore:
    """Tenant-scoped record documents.

    Predicates are evaluated against ``flat_record(doc, storage=True)``. Writes
    that carry a guard predicate check it under the store lock, so the check and
    the write are one step.
    """

    def __init__(self) -> None:
        self._records: Dict[str, Dict[str, dict]] = {}
        self._lock = threading.Lock()

    def _bucket(self, entity: str) -> Dict[str, dict]:
        return self._records.setdefault(entity, {})

    def create(self, doc: dict) -> dict:
        record = copy.deepcopy(doc)
        record.setdefault("id", str(uuid.uuid4()))
        record.setdefault("deleted", False)
        with self._lock:
            self._bucket(record["entity"])[record["id"]] = record
        return copy.deepcopy(record)

    def _select(self, entity: str, predicate: Predicate | None) -> List[dict]:
        return [
            doc for doc in self._bucket(entity).values()
            if matches(predicate, flat_record(doc, storage=True))
        ]

    def find_one(self, entity: str, predicate: Predicate | None) -> dict | None:
        with self._lock:
            found = self._select(entity, predicate)
        return copy.deepcopy(found[0]) if found else None

    def find(
        self,
        entity: str,
        predicate: Predicate | None,
        forced: Predicate | None = None,
        limit: int = 10,
        offset: int = 0,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> list[dict]:
        with self._lock:
            items = self._select(entity, and_(predicate, forced))
        items.sort(key=lambda d: d.get("id") or "")
        items.sort(
            key=lambda d: _sort_key(resolve_path(flat_record(d), sort_by)),
            reverse=sort_order == "desc",
        )
        return [copy.deepcopy(d) for d in items[offset:offset + limit]]

    def count(self, entity: str, predicate: Predicate | None, forced: Predicate | None = None) -> int:
        with self._lock:
            return len(self._select(entity, and_(predicate, forced)))

    def update(
        self,
        entity: str,
        record_id: str,
        data_changes: dict,
        stamps: dict,
        guard: Predicate | None = None,
    ) -> tuple[dict, dict] | None:
        """Apply ``data_changes`` when ``guard`` holds; return ``(before, after)``."""
        with self._lock:
            doc = self._bucket(entity).get(record_id)
            if doc is None or not matches(guard, flat_record(doc, storage=True)):
                return None
            before = copy.deepcopy(doc)
            doc.setdefault("data", {}).update(copy.deepcopy(data_changes))
            doc.update(copy.deepcopy(stamps))
            return before, copy.deepcopy(doc)

    def soft_delete(
        self,
        entity: str,
        record_id: str,
        actor_id: str | None,
        deleted_at: datetime,
        guard: Predicate | None = None,
    ) -> dict | None:
        with self._lock:
            doc = self._bucket(entity).get(record_id)
            if doc is None or not matches(guard, flat_record(doc, storage=True)):
                return None
            doc["deleted"] = True
            doc["deleted_at"] = deleted_at
            doc["deleted_by"] = actor_id
            return copy.deepcopy(doc)

    def set_approval(self, entity: str, record_id: str, approval: dict | None, guard: Predicate | None = None) -> dict | None:
        with self._lock:
            doc = self._bucket(entity).get(record_id)
            if doc is None or not matches(guard, flat_record(doc, storage=True)):
                return None
            doc["approval"] = copy.deepcopy(approval)
            return copy.deepcopy(doc)


class MemoryAuditStore:
    def __init__(self) -> None:
        self._entries: List[dict] = []
        self._lock = threading.Lock()

    def log_change(
        self,
        tenant_id: str,
        action: str,
        entity: str,
        record_id: str,
        actor_id: str | None,
        changes: dict,
    ) -> dict:
        entry = {
            "id": str(uuid.uuid4()),
            "tenant_id": tenant_id,
            "action": action,
            "entity": entity,
            "record_id": record_id,
            "actor_id": actor_id,
            "changes": copy.deepcopy(changes),
            "timestamp": datetime.now(timezone.utc),
        }
        with self._lock:
            self._entries.append(entry)
        return copy.deepcopy(entry)

    def list(self, entity: str | None = None, record_id: str | None = None, limit: int = 200) -> list[dict]:
        items = list(self._entries)
        if entity:
            items = [e for e in items if e.get("entity") == entity]
        if record_id:
            items = [e for e in items if e.get("record_id") == record_id]
        return [copy.deepcopy(e) for e in items[-limit:]]


class MemoryFileStore:
    """File metadata; bytes live in external storage behind ``url``."""

    def __init__(self) -> None:
        self._files: Dict[str, dict] = {}

    def create(self, record: dict) -> dict:
        item = copy.deepcopy(record)
        item.setdefault("id", str(uuid.uuid4()))
        item.setdefault("tenant_id", "default")
        item.setdefault("created_at", _now())
        self._files[item["id"]] = item
        return copy.deepcopy(item)

    def get(self, tenant_id: str, file_id: str) -> dict | None:
        item = self._files.get(file_id)
        if not item or item.get("tenant_id") != tenant_id:
            return None
        return copy.deepcopy(item)


class MemoryPermissionStore:
    """Users and the permissions granted to their principals (roles, groups)."""

    def __init__(self) -> None:
        self._users: Dict[str, dict] = {}
        self._grants: List[dict] = []

    def upsert_user(self, user: dict) -> dict:
        item = copy.deepcopy(user)
        item.setdefault("roles", [])
        item.setdefault("groups", [])
        item.setdefault("tenant_id", "default")
        self._users[item["id"]] = item
        return copy.deepcopy(item)

    def get_user(self, user_id: str) -> dict | None:
        item = self._users.get(user_id)
        return copy.deepcopy(item) if item else None

    def grant(self, principal_id: str, resource: str, actions: dict, field_rules: dict | None = None) -> dict:
        item = {
            "id": str(uuid.uuid4()),
            "principal_id": principal_id,
            "resource": resource,
            "actions": copy.deepcopy(actions),
            "field_rules": copy.deepcopy(field_rules) if field_rules is not None else None,
            "created_at": _now(),
        }
        self._grants.append(item)
        return copy.deepcopy(item)

    def list_grants(self, principal_ids: List[str], resources: List[str]) -> list[dict]:
        return [
            copy.deepcopy(g) for g in self._grants
            if g.get("principal_id") in principal_ids and g.get("resource") in resources
        ]


class MemoryApprovalWorkflowStore:
    def __init__(self) -> None:
        self._workflows: Dict[str, dict] = {}

    def create(self, record: dict) -> dict:
        item = copy.deepcopy(record)
        item.setdefault("id", str(uuid.uuid4()))
        item.setdefault("tenant_id", "default")
        item.setdefault("active", True)
        item.setdefault("priority", 0)
        item.setdefault("criteria", [])
        item.setdefault("steps", [])
        item.setdefault("created_at", _now())
        self._workflows[item["id"]] = item
        return copy.deepcopy(item)

    def get(self, workflow_id: str) -> dict | None:
        item = self._workflows.get(workflow_id)
        return copy.deepcopy(item) if item else None

    def list_active(self, tenant_id: str, entity: str) -> list[dict]:
        items = [
            w for w in self._workflows.values()
            if w.get("active") and w.get("tenant_id") == tenant_id and w.get("entity") == entity
        ]
        return [copy.deepcopy(w) for w in items]


class MemoryWebhookStore:
    def __init__(self) -> None:
        self._hooks: Dict[str, dict] = {}
        self._deliveries: List[dict] = []
        self._lock = threading.Lock()

    def create(self, record: dict) -> dict:
        item = copy.deepcopy(record)
        item.setdefault("id", str(uuid.uuid4()))
        item.setdefault("tenant_id", "default")
        item.setdefault("active", True)
        item.setdefault("events", [])
        item.setdefault("headers", {})
        item.setdefault("created_at", _now())
        self._hooks[item["id"]] = item
        return copy.deepcopy(item)

    def list_active(self, tenant_id: str, event_name: str, entity: str | None = None) -> list[dict]:
        out = []
        for hook in self._hooks.values():
            if not hook.get("active") or hook.get("tenant_id") != tenant_id:
                continue
            if event_name not in (hook.get("events") or []):
                continue
            if hook.get("entity") and hook.get("entity") != entity:
                continue
            out.append(copy.deepcopy(hook))
        return out

    def record_delivery(self, delivery: dict) -> dict:
        item = copy.deepcopy(delivery)
        item.setdefault("id", str(uuid.uuid4()))
        item.setdefault("created_at", _now())
        with self._lock:
            self._deliveries.append(item)
        return copy.deepcopy(item)

    def list_deliveries(self, webhook_id: str | None = None) -> list[dict]:
        with self._lock:
            items = list(self._deliveries)
        if webhook_id:
            items = [d for d in items if d.get("webhook_id") == webhook_id]
        return [copy.deepcopy(d) for d in items]


class MemoryAutomationStore:
    def __init__(self) -> None:
        self._automations: Dict[str, dict] = {}
        self._runs: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def create(self, record: dict) -> dict:
        item = copy.deepcopy(record)
        item.setdefault("id", str(uuid.uuid4()))
        item.setdefault("status", "draft")
        item.setdefault("created_at", _now())
        item.setdefault("updated_at", _now())
        self._automations[item["id"]] = item
        return copy.deepcopy(item)

    def list(self, status: str | None = None, tenant_id: str | None = None) -> list[dict]:
        items = list(self._automations.values())
        if status:
            items = [i for i in items if i.get("status") == status]
        if tenant_id:
            items = [i for i in items if i.get("tenant_id", "default") == tenant_id]
        items.sort(key=lambda i: i.get("updated_at", ""), reverse=True)
        return [copy.deepcopy(i) for i in items]

    def create_run(self, record: dict) -> dict:
        item = copy.deepcopy(record)
        item.setdefault("id", str(uuid.uuid4()))
        item.setdefault("status", "queued")
        item.setdefault("created_at", _now())
        item.setdefault("updated_at", _now())
        with self._lock:
            self._runs[item["id"]] = item
        return copy.deepcopy(item)

    def list_runs(self, automation_id: str | None = None) -> list[dict]:
        with self._lock:
            items = list(self._runs.values())
        if automation_id:
            items = [r for r in items if r.get("automation_id") == automation_id]
        items.sort(key=lambda r: r.get("created_at", ""), reverse=True)
        return [copy.deepcopy(r) for r in items]


class MemoryJobStore:
    def __init__(self) -> None:
        self._jobs: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def enqueue(self, job: dict) -> dict:
        record = copy.deepcopy(job)
        with self._lock:
            idem = record.get("idempotency_key")
            if idem:
                for existing in self._jobs.values():
                    if (
                        existing.get("idempotency_key") == idem
                        and existing.get("tenant_id") == record.get("tenant_id")
                        and existing.get("type") == record.get("type")
                    ):
                        return copy.deepcopy(existing)
            record.setdefault("id", str(uuid.uuid4()))
            record.setdefault("status", "queued")
            record.setdefault("attempt", 0)
            record.setdefault("run_at", _now())
            record.setdefault("created_at", _now())
            self._jobs[record["id"]] = record
        return copy.deepcopy(record)

    def list(self, tenant_id: str | None = None, job_type: str | None = None, limit: int = 200) -> list[dict]:
        with self._lock:
            items = list(self._jobs.values())
        if tenant_id:
            items = [j for j in items if j.get("tenant_id") == tenant_id]
        if job_type:
            items = [j for j in items if j.get("type") == job_type]
        items.sort(key=lambda j: j.get("created_at", ""), reverse=True)
        return [copy.deepcopy(j) for j in items[:limit]]
