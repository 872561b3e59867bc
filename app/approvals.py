"""Approval workflow state for records.

Only what the record engine needs lives here: picking the workflow that applies
to a new record, recording step decisions, and the lock guard used by writes.
"""

from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Any, List

from recordbase.predicate import Predicate


DRAFT = "draft"
PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"

STATUSES = (DRAFT, PENDING, APPROVED, REJECTED)


def _str_form(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    if isinstance(value, list):
        return "[" + " ".join(_str_form(v) for v in value) + "]"
    return str(value)


def workflow_matches(workflow: dict, record: dict) -> bool:
    criteria = workflow.get("criteria") or []
    for cond in criteria:
        name = cond.get("field")
        if name not in record:
            return False
        if cond.get("operator", "equals") == "equals" and _str_form(record[name]) != _str_form(cond.get("value")):
            return False
    return True


class ApprovalInitializer:
    def __init__(self, workflow_store: Any) -> None:
        self._store = workflow_store

    def initialize(self, tenant_id: str, entity: str, record: dict) -> dict | None:
        """Pending state for the first matching active workflow, else ``None``."""
        workflows = self._store.list_active(tenant_id, entity)
        workflows.sort(key=lambda w: (int(w.get("priority") or 0), w.get("created_at") or ""))
        for workflow in workflows:
            if workflow_matches(workflow, record):
                return {
                    "status": PENDING,
                    "current_step": 0,
                    "workflow_id": workflow.get("id"),
                    "history": [],
                }
        return None

    def decide(self, state: dict, actor_id: str | None, action: str, comment: str | None = None) -> dict:
        """Apply an approve/reject decision on the current step."""
        if not state or state.get("status") != PENDING:
            raise ValueError("approval is not pending")
        if action not in {"approve", "reject"}:
            raise ValueError(f"unknown approval action: {action}")
        out = copy.deepcopy(state)
        steps = self._steps(out.get("workflow_id"))
        step = int(out.get("current_step") or 0)
        history: List[dict] = out.setdefault("history", [])
        history.append(
            {
                "step_name": steps[step].get("name") if step < len(steps) else None,
                "actor_id": actor_id,
                "action": action,
                "comment": comment,
                "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            }
        )
        if action == "reject":
            out["status"] = REJECTED
        elif step + 1 < len(steps):
            out["current_step"] = step + 1
        else:
            out["status"] = APPROVED
        return out

    def _steps(self, workflow_id: str | None) -> List[dict]:
        workflow = self._store.get(workflow_id) if workflow_id else None
        return list((workflow or {}).get("steps") or [])


def is_locked(approval: dict | None) -> bool:
    return bool(approval) and approval.get("status") == PENDING


def unlocked_guard() -> Predicate:
    return {"_approval.status": {"$ne": PENDING}}


def pending_step_guard(approval: dict) -> Predicate:
    """Holds while ``approval`` is still pending at the same step."""
    return {"_approval.status": PENDING, "_approval.current_step": approval.get("current_step")}
