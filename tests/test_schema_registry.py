import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from recordbase.errors import NotFound
from schema_registry import SchemaRegistry, validate_definition


class TestSchemaRegistry(unittest.TestCase):
    def setUp(self) -> None:
        self.registry = SchemaRegistry()
        self.definition = {
            "name": "leads",
            "label": "Leads",
            "fields": [
                {"name": "name", "type": "text", "label": "Name", "required": True},
                {"name": "status", "type": "select", "options": [{"value": "new"}, "won"]},
                {"name": "company", "type": "lookup", "lookup": {"entity": "companies"}},
            ],
        }

    def test_upsert_and_find(self) -> None:
        result = self.registry.upsert(self.definition, actor={"id": "u1"}, reason="install")
        self.assertTrue(result["ok"], result)
        entity = self.registry.find_entity("leads")
        self.assertEqual(entity.field_names(), ["name", "status", "company"])
        self.assertEqual(entity.get_field("status").options, ("new", "won"))
        self.assertEqual(entity.get_field("company").lookup.label_field, "name")
        self.assertEqual(self.registry.current_hash("leads"), result["schema_hash"])

    def test_find_missing_entity(self) -> None:
        with self.assertRaises(NotFound):
            self.registry.find_entity("nope")

    def test_unchanged_definition_warns(self) -> None:
        self.registry.upsert(self.definition)
        result = self.registry.upsert(self.definition)
        self.assertTrue(result["ok"])
        self.assertEqual(result["warnings"][0]["code"], "SCHEMA_UNCHANGED")
        self.assertEqual(len(self.registry.list_versions("leads")), 1)

    def test_update_records_version_and_history(self) -> None:
        first = self.registry.upsert(self.definition, actor={"id": "u1"})
        changed = dict(self.definition)
        changed["fields"] = self.definition["fields"] + [{"name": "age", "type": "number"}]
        second = self.registry.upsert(changed, actor={"id": "u1"}, reason="add age")
        self.assertNotEqual(first["schema_hash"], second["schema_hash"])
        versions = self.registry.list_versions("leads")
        self.assertEqual([v["version_num"] for v in versions], [1, 2])
        history = self.registry.history("leads")
        self.assertEqual(history[0]["action"], "update")
        self.assertEqual(history[0]["from_hash"], first["schema_hash"])
        self.assertEqual(history[1]["action"], "create")

    def test_invalid_definitions(self) -> None:
        issues = validate_definition(
            {
                "name": "x",
                "fields": [
                    {"name": "id", "type": "text"},
                    {"name": "a", "type": "blob"},
                    {"name": "a", "type": "text"},
                    {"name": "ref", "type": "lookup"},
                ],
            }
        )
        codes = {issue["code"] for issue in issues}
        self.assertEqual(
            codes,
            {"SCHEMA_RESERVED_FIELD", "SCHEMA_UNKNOWN_TYPE", "SCHEMA_DUPLICATE_FIELD", "SCHEMA_LOOKUP_INVALID"},
        )
        result = self.registry.upsert({"name": "", "fields": []})
        self.assertFalse(result["ok"])
        self.assertEqual(self.registry.list(), [])


if __name__ == "__main__":
    unittest.main()
