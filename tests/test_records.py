import os
import sys
import time
import unittest
import uuid


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.access import AccessGate
from app.approvals import ApprovalInitializer
from app.dispatch import BackgroundDispatcher
from app.populate import Populator
from app.records import RecordService, RequestContext, clamp_paging, diff_values
from app.stores import (
    MemoryApprovalWorkflowStore,
    MemoryAuditStore,
    MemoryFileStore,
    MemoryPermissionStore,
    MemoryRecordStore,
)
from event_bus import EventBus
from recordbase.errors import (
    DeadlineExceeded,
    FieldNotWritable,
    InvalidFormat,
    MissingField,
    NotFound,
    PermissionDenied,
    RecordLocked,
    ReferenceNotFound,
    UnknownField,
    ValidationError,
)
from schema_registry import SchemaRegistry


ALL_ACTIONS = {
    "create": {"allowed": True},
    "read": {"allowed": True, "ui_filters": ["name", "status", "age"]},
    "update": {"allowed": True},
    "delete": {"allowed": True},
}


class RecordsTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.registry = SchemaRegistry()
        self.registry.upsert({"name": "companies", "fields": [{"name": "name", "type": "text", "required": True}]})
        self.registry.upsert(
            {
                "name": "leads",
                "fields": [
                    {"name": "name", "type": "text", "label": "Name", "required": True},
                    {"name": "email", "type": "email", "label": "Email"},
                    {"name": "age", "type": "number", "label": "Age"},
                    {"name": "salary", "type": "currency", "label": "Salary"},
                    {"name": "status", "type": "select", "options": ["new", "won", "lost"]},
                    {"name": "owner_id", "type": "text"},
                    {"name": "company", "type": "lookup", "lookup": {"entity": "companies", "label_field": "name"}},
                    {"name": "avatar", "type": "image"},
                ],
            }
        )
        self.records = MemoryRecordStore()
        self.audit = MemoryAuditStore()
        self.files = MemoryFileStore()
        self.workflows = MemoryApprovalWorkflowStore()
        self.permissions = MemoryPermissionStore()
        self.permissions.upsert_user({"id": "u1", "tenant_id": "t1", "roles": ["sales"]})
        self.permissions.upsert_user({"id": "u2", "tenant_id": "t1", "roles": ["clerk"]})
        self.permissions.grant("sales", "*", ALL_ACTIONS)
        self.permissions.grant(
            "clerk",
            "leads",
            {
                "create": {"allowed": True},
                "read": {"allowed": True, "ui_filters": ["name", "status"]},
                "update": {"allowed": True, "condition": {"op": "eq", "field": "owner_id", "value": "$user.id"}},
            },
            field_rules={"salary": "none", "email": "read_only"},
        )
        self.events = []
        self.bus = EventBus()
        self.bus.subscribe("*", self.events.append)
        self.service = RecordService(
            self.registry,
            self.records,
            AccessGate(self.permissions),
            self.audit,
            populator=Populator(self.records, self.files),
            approvals=ApprovalInitializer(self.workflows),
            event_bus=self.bus,
            file_store=self.files,
        )
        self.ctx = RequestContext("t1", "u1")
        self.clerk = RequestContext("t1", "u2")


class TestCreate(RecordsTestCase):
    def test_missing_required_field(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            self.service.create(self.ctx, "leads", {})
        self.assertIsInstance(ctx.exception, MissingField)
        self.assertEqual(ctx.exception.path, "name")
        self.assertEqual(self.records.count("leads", {}), 0)
        self.assertEqual(self.audit.list(), [])
        self.assertEqual(self.events, [])

    def test_create_stamps_audits_and_notifies(self) -> None:
        record = self.service.create(self.ctx, "leads", {"name": "Ada", "age": "36", "status": "new"})
        self.assertEqual(record["name"], "Ada")
        self.assertEqual(record["age"], 36.0)
        self.assertEqual(record["created_by"], "u1")
        self.assertEqual(record["updated_by"], "u1")
        self.assertIsNotNone(record["created_at"])
        self.assertIsNone(record["_approval"])
        self.assertNotIn("tenant_id", record)

        entries = self.audit.list("leads", record["id"])
        self.assertEqual(entries[0]["action"], "CREATE")
        self.assertEqual(entries[0]["changes"]["age"], {"old": None, "new": 36.0})

        self.assertEqual(len(self.events), 1)
        event = self.events[0]
        self.assertEqual(event["name"], "record.created")
        self.assertEqual(event["payload"]["record_id"], record["id"])
        self.assertEqual(event["meta"]["tenant_id"], "t1")
        self.assertEqual(event["meta"]["entity"], "leads")
        self.assertTrue(event["meta"]["schema_hash"].startswith("sha256:"))
        self.assertIsInstance(event["payload"]["record"]["created_at"], str)

    def test_invalid_value_rejected_before_write(self) -> None:
        with self.assertRaises(InvalidFormat):
            self.service.create(self.ctx, "leads", {"name": "Ada", "email": "nope"})
        with self.assertRaises(UnknownField):
            self.service.create(self.ctx, "leads", {"name": "Ada", "ssn": "1"})
        self.assertEqual(self.records.count("leads", {}), 0)

    def test_unknown_entity(self) -> None:
        with self.assertRaises(NotFound):
            self.service.create(self.ctx, "ghosts", {"name": "x"})

    def test_lookup_must_exist_in_tenant(self) -> None:
        company = self.service.create(self.ctx, "companies", {"name": "Acme"})
        lead = self.service.create(self.ctx, "leads", {"name": "Ada", "company": company["id"]})
        self.assertEqual(lead["company"], {"id": company["id"], "display_label": "Acme"})
        with self.assertRaises(ReferenceNotFound):
            self.service.create(self.ctx, "leads", {"name": "Bob", "company": str(uuid.uuid4())})
        other_tenant = RequestContext("t2", "u1")
        with self.assertRaises(ReferenceNotFound):
            self.service.create(other_tenant, "leads", {"name": "Bob", "company": company["id"]})

    def test_populated_lookup_is_accepted_back(self) -> None:
        company = self.service.create(self.ctx, "companies", {"name": "Acme"})
        lead = self.service.create(self.ctx, "leads", {"name": "Ada", "company": company["id"]})
        updated = self.service.update(self.ctx, "leads", lead["id"], {"company": lead["company"], "age": 3})
        self.assertEqual(updated["company"]["id"], company["id"])

    def test_file_population(self) -> None:
        item = self.files.create({"tenant_id": "t1", "original_name": "ada.png", "url": "/files/ada.png"})
        lead = self.service.create(self.ctx, "leads", {"name": "Ada", "avatar": item["id"]})
        self.assertEqual(lead["avatar"], {"id": item["id"], "original_name": "ada.png", "url": "/files/ada.png"})
        with self.assertRaises(ReferenceNotFound):
            self.service.create(self.ctx, "leads", {"name": "Bob", "avatar": str(uuid.uuid4())})

    def test_dangling_lookup_keeps_raw_id(self) -> None:
        company = self.service.create(self.ctx, "companies", {"name": "Acme"})
        lead = self.service.create(self.ctx, "leads", {"name": "Ada", "company": company["id"]})
        self.service.delete(self.ctx, "companies", company["id"])
        self.assertEqual(self.service.get(self.ctx, "leads", lead["id"])["company"], company["id"])

    def test_approval_initialized_on_create(self) -> None:
        self.workflows.create(
            {"tenant_id": "t1", "entity": "leads", "criteria": [{"field": "status", "operator": "equals", "value": "won"}]}
        )
        won = self.service.create(self.ctx, "leads", {"name": "Ada", "status": "won"})
        self.assertEqual(won["_approval"]["status"], "pending")
        fresh = self.service.create(self.ctx, "leads", {"name": "Bob", "status": "new"})
        self.assertIsNone(fresh["_approval"])


class TestReadAndList(RecordsTestCase):
    def _seed(self) -> list:
        out = []
        for name, age, status in [("Ada", 36, "won"), ("Bob", 18, "new"), ("Cleo", 12, "lost"), ("Dan", 40, "won")]:
            out.append(self.service.create(self.ctx, "leads", {"name": name, "age": age, "status": status, "salary": 100}))
        return out

    def test_get_and_not_found(self) -> None:
        record = self._seed()[0]
        self.assertEqual(self.service.get(self.ctx, "leads", record["id"])["name"], "Ada")
        with self.assertRaises(NotFound):
            self.service.get(self.ctx, "leads", str(uuid.uuid4()))
        with self.assertRaises(NotFound):
            self.service.get(RequestContext("t2", "u1"), "leads", record["id"])

    def test_numeric_filter(self) -> None:
        self._seed()
        result = self.service.list(self.ctx, "leads", [{"field": "age", "operator": "gt", "value": 18}], sort_by="name", sort_order="asc")
        self.assertEqual([r["name"] for r in result["records"]], ["Ada", "Dan"])
        self.assertEqual(result["total"], 2)

    def test_hidden_field_cannot_be_filtered(self) -> None:
        self._seed()
        self.permissions.upsert_user({"id": "u3", "tenant_id": "t1", "roles": ["auditor"]})
        self.permissions.grant(
            "auditor",
            "leads",
            {"read": {"allowed": True, "ui_filters": ["name", "salary"]}},
            field_rules={"salary": "none"},
        )
        auditor = RequestContext("t1", "u3")
        with self.assertRaises(PermissionDenied) as ctx:
            self.service.list(auditor, "leads", [{"field": "salary", "operator": "gt", "value": 50}])
        self.assertEqual(ctx.exception.path, "filters[0].field")
        result = self.service.list(auditor, "leads", [{"field": "name", "operator": "eq", "value": "Ada"}])
        self.assertEqual([r["name"] for r in result["records"]], ["Ada"])
        self.assertNotIn("salary", result["records"][0])

    def test_hidden_field_is_absent(self) -> None:
        record = self._seed()[0]
        self.assertEqual(self.service.get(self.ctx, "leads", record["id"])["salary"], 100.0)
        seen = self.service.get(self.clerk, "leads", record["id"])
        self.assertNotIn("salary", seen)
        listed = self.service.list(self.clerk, "leads")
        self.assertTrue(all("salary" not in r for r in listed["records"]))

    def test_filter_outside_whitelist_returns_nothing(self) -> None:
        self._seed()
        with self.assertRaises(PermissionDenied):
            self.service.list(self.clerk, "leads", [{"field": "status", "value": "won"}, {"field": "ssn", "value": "1"}])
        with self.assertRaises(PermissionDenied):
            self.service.list(self.clerk, "leads", [{"field": "age", "operator": "gt", "value": 1}])
        result = self.service.list(self.clerk, "leads", [{"field": "status", "value": "won"}])
        self.assertEqual(result["total"], 2)

    def test_paging_and_sorting(self) -> None:
        self._seed()
        page = self.service.list(self.ctx, "leads", page=2, limit=3, sort_by="age", sort_order="asc")
        self.assertEqual(page["page"], 2)
        self.assertEqual(page["limit"], 3)
        self.assertEqual(page["total"], 4)
        self.assertEqual([r["name"] for r in page["records"]], ["Dan"])
        first = self.service.list(self.ctx, "leads", page=0, limit=1000, sort_by="age", sort_order="desc")
        self.assertEqual(first["page"], 1)
        self.assertEqual(first["limit"], 100)
        self.assertEqual([r["name"] for r in first["records"]], ["Dan", "Ada", "Bob", "Cleo"])
        default = self.service.list(self.ctx, "leads", page="x", limit="y")
        self.assertEqual((default["page"], default["limit"]), (1, 10))

    def test_sort_validation(self) -> None:
        self._seed()
        with self.assertRaises(UnknownField):
            self.service.list(self.ctx, "leads", sort_by="nope")
        with self.assertRaises(PermissionDenied):
            self.service.list(self.clerk, "leads", sort_by="salary")

    def test_tenant_isolation(self) -> None:
        self._seed()
        self.permissions.upsert_user({"id": "u9", "tenant_id": "t2", "roles": ["sales"]})
        self.assertEqual(self.service.list(RequestContext("t2", "u9"), "leads")["total"], 0)

    def test_forced_condition_limits_rows(self) -> None:
        mine = self.service.create(self.clerk, "leads", {"name": "Mine", "owner_id": "u2"})
        theirs = self.service.create(self.ctx, "leads", {"name": "Theirs", "owner_id": "u1"})
        self.assertEqual(self.service.update(self.clerk, "leads", mine["id"], {"name": "Mine 2"})["name"], "Mine 2")
        with self.assertRaises(NotFound):
            self.service.update(self.clerk, "leads", theirs["id"], {"name": "Hijack"})
        self.assertEqual(self.service.get(self.ctx, "leads", theirs["id"])["name"], "Theirs")
        listed = self.service.list(self.clerk, "leads", action="update")
        self.assertEqual([r["name"] for r in listed["records"]], ["Mine 2"])


class TestUpdateAndDelete(RecordsTestCase):
    def test_partial_update_diff_and_event(self) -> None:
        record = self.service.create(self.ctx, "leads", {"name": "Ada", "age": 36})
        self.events.clear()
        updated = self.service.update(self.ctx, "leads", record["id"], {"age": "37"})
        self.assertEqual(updated["name"], "Ada")
        self.assertEqual(updated["age"], 37.0)
        entry = self.audit.list("leads", record["id"])[-1]
        self.assertEqual(entry["action"], "UPDATE")
        self.assertEqual(entry["changes"], {"age": {"old": 36.0, "new": 37.0}})
        self.assertEqual(self.events[0]["name"], "record.updated")
        self.assertEqual(self.events[0]["payload"]["changes"], {"age": {"old": 36.0, "new": 37.0}})

    def test_read_only_and_hidden_fields_not_writable(self) -> None:
        record = self.service.create(self.ctx, "leads", {"name": "Ada", "owner_id": "u2"})
        with self.assertRaises(FieldNotWritable):
            self.service.update(self.clerk, "leads", record["id"], {"email": "a@b.co"})
        with self.assertRaises(FieldNotWritable):
            self.service.update(self.clerk, "leads", record["id"], {"salary": 5})
        with self.assertRaises(FieldNotWritable):
            self.service.create(self.clerk, "leads", {"name": "Bob", "salary": 5})

    def test_pending_record_is_locked(self) -> None:
        self.workflows.create({"tenant_id": "t1", "entity": "leads", "steps": [{"name": "manager"}]})
        record = self.service.create(self.ctx, "leads", {"name": "Ada", "age": 1})
        with self.assertRaises(RecordLocked):
            self.service.update(self.ctx, "leads", record["id"], {"age": 2})
        with self.assertRaises(RecordLocked):
            self.service.delete(self.ctx, "leads", record["id"])
        current = self.service.get(self.ctx, "leads", record["id"])
        self.assertEqual(current["age"], 1.0)
        self.assertEqual([e["action"] for e in self.audit.list("leads", record["id"])], ["CREATE"])

        approved = self.service.decide_approval(self.ctx, "leads", record["id"], "approve", "fine")
        self.assertEqual(approved["_approval"]["status"], "approved")
        self.assertEqual(self.service.update(self.ctx, "leads", record["id"], {"age": 2})["age"], 2.0)

    def test_stale_approval_decision_is_rejected(self) -> None:
        self.workflows.create({"tenant_id": "t1", "entity": "leads", "steps": [{"name": "manager"}, {"name": "director"}]})
        record = self.service.create(self.ctx, "leads", {"name": "Ada"})
        records = self.records

        class RacingApprovals(ApprovalInitializer):
            def decide(self, state, actor_id, action, comment=None):
                # another approver lands the same step first
                records.set_approval("leads", record["id"], ApprovalInitializer.decide(self, state, "u9", action))
                return ApprovalInitializer.decide(self, state, actor_id, action, comment)

        self.service._approvals = RacingApprovals(self.workflows)
        with self.assertRaises(NotFound) as ctx:
            self.service.decide_approval(self.ctx, "leads", record["id"], "approve")
        self.assertEqual(ctx.exception.path, "approval")
        stored = self.records.find_one("leads", {"id": record["id"]})["approval"]
        self.assertEqual(stored["current_step"], 1)
        self.assertEqual([h["actor_id"] for h in stored["history"]], ["u9"])
        self.assertEqual([e["action"] for e in self.audit.list("leads", record["id"])], ["CREATE"])

    def test_store_guard_blocks_locked_write(self) -> None:
        record = self.service.create(self.ctx, "leads", {"name": "Ada"})
        self.records.set_approval("leads", record["id"], {"status": "pending", "current_step": 0, "workflow_id": None, "history": []})
        guard = {"$and": [{"id": record["id"]}, {"_approval.status": {"$ne": "pending"}}]}
        self.assertIsNone(self.records.update("leads", record["id"], {"name": "x"}, {}, guard))
        self.assertIsNone(self.records.soft_delete("leads", record["id"], "u1", None, guard))
        error = self.service._diagnose_failed_write(self.ctx, self.registry.find_entity("leads"), record["id"])
        self.assertIsInstance(error, RecordLocked)

    def test_soft_delete(self) -> None:
        record = self.service.create(self.ctx, "leads", {"name": "Ada"})
        self.events.clear()
        self.service.delete(self.ctx, "leads", record["id"])
        with self.assertRaises(NotFound):
            self.service.get(self.ctx, "leads", record["id"])
        with self.assertRaises(NotFound):
            self.service.update(self.ctx, "leads", record["id"], {"name": "x"})
        with self.assertRaises(NotFound):
            self.service.delete(self.ctx, "leads", record["id"])
        stored = self.records.find_one("leads", {"id": record["id"]})
        self.assertTrue(stored["deleted"])
        self.assertEqual(stored["deleted_by"], "u1")
        self.assertIsNotNone(stored["deleted_at"])
        self.assertEqual(self.audit.list("leads", record["id"])[-1]["action"], "DELETE")
        self.assertEqual(self.events, [])

    def test_delete_requires_permission(self) -> None:
        record = self.service.create(self.ctx, "leads", {"name": "Ada"})
        with self.assertRaises(PermissionDenied):
            self.service.delete(self.clerk, "leads", record["id"])


class TestSideEffects(RecordsTestCase):
    def test_failing_subscriber_does_not_undo_write(self) -> None:
        def boom(event: dict) -> None:
            raise RuntimeError("downstream is down")

        self.bus.subscribe("record.created", boom)
        record = self.service.create(self.ctx, "leads", {"name": "Ada"})
        self.assertEqual(self.service.get(self.ctx, "leads", record["id"])["name"], "Ada")
        self.assertEqual(len(self.events), 1)

    def test_background_dispatch(self) -> None:
        dispatcher = BackgroundDispatcher(max_pending=10, workers=1)
        self.addCleanup(dispatcher.shutdown)
        self.service._dispatcher = dispatcher
        self.service.create(self.ctx, "leads", {"name": "Ada"})
        self.assertTrue(dispatcher.join(timeout=5))
        self.assertEqual(dispatcher.stats()["completed"], 1)
        self.assertEqual(self.events[0]["name"], "record.created")


class TestDeadline(RecordsTestCase):
    def test_expired_deadline_aborts_before_write(self) -> None:
        ctx = RequestContext("t1", "u1", deadline=time.monotonic() - 1)
        with self.assertRaises(DeadlineExceeded):
            self.service.create(ctx, "leads", {"name": "Ada"})
        self.assertEqual(self.records.count("leads", {}), 0)
        with self.assertRaises(DeadlineExceeded):
            self.service.list(ctx, "leads")

    def test_with_timeout(self) -> None:
        ctx = RequestContext.with_timeout("t1", "u1", 30)
        self.assertGreater(ctx.deadline, time.monotonic())
        self.assertIsNone(RequestContext.with_timeout("t1", "u1", None).deadline)


class TestHelpers(unittest.TestCase):
    def test_clamp_paging(self) -> None:
        self.assertEqual(clamp_paging(0, 0), (1, 10))
        self.assertEqual(clamp_paging(-3, 500), (1, 100))
        self.assertEqual(clamp_paging("2", "25"), (2, 25))
        self.assertEqual(clamp_paging(None, None, default_limit=20, max_limit=50), (1, 20))

    def test_diff_values(self) -> None:
        self.assertEqual(
            diff_values({"a": 1, "b": 2}, {"a": 1, "b": 3, "c": 4}),
            {"b": {"old": 2, "new": 3}, "c": {"old": None, "new": 4}},
        )


if __name__ == "__main__":
    unittest.main()
