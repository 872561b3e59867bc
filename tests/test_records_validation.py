import os
import sys
import unittest
import uuid
from datetime import datetime, timezone


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.records_validation import convert, validate_record_payload
from recordbase.errors import (
    FieldNotWritable,
    InvalidFormat,
    InvalidOption,
    InvalidType,
    MissingField,
    ReferenceNotFound,
    UnknownField,
)
from recordbase.schema import EntityDefinition, FieldDefinition, LookupTarget


def _field(ftype: str, **kwargs) -> FieldDefinition:
    return FieldDefinition(name=kwargs.pop("name", "f"), type=ftype, **kwargs)


class TestConvert(unittest.TestCase):
    def test_empty_values_omit_non_text(self) -> None:
        self.assertIsNone(convert(_field("number"), None))
        self.assertIsNone(convert(_field("number"), ""))
        self.assertIsNone(convert(_field("date"), ""))
        self.assertEqual(convert(_field("text"), ""), "")

    def test_number(self) -> None:
        self.assertEqual(convert(_field("number"), "42"), 42.0)
        self.assertEqual(convert(_field("currency"), 9), 9.0)
        with self.assertRaises(InvalidType):
            convert(_field("number", label="Age"), "abc")
        with self.assertRaises(InvalidType):
            convert(_field("number"), True)
        with self.assertRaises(InvalidType):
            convert(_field("number"), "nan")

    def test_boolean(self) -> None:
        self.assertIs(convert(_field("boolean"), "true"), True)
        self.assertIs(convert(_field("boolean"), "0"), False)
        self.assertIs(convert(_field("boolean"), False), False)
        with self.assertRaises(InvalidType):
            convert(_field("boolean"), "yes")

    def test_date(self) -> None:
        self.assertEqual(convert(_field("date"), "2024-02-03"), datetime(2024, 2, 3, tzinfo=timezone.utc))
        self.assertEqual(
            convert(_field("date"), "2024-02-03T10:00:00+02:00"),
            datetime(2024, 2, 3, 8, 0, tzinfo=timezone.utc),
        )
        with self.assertRaises(InvalidFormat):
            convert(_field("date"), "03/02/2024")
        with self.assertRaises(InvalidFormat):
            convert(_field("date"), "2024-02-03T10:00:00")

    def test_email(self) -> None:
        self.assertEqual(convert(_field("email"), "ada@example.com"), "ada@example.com")
        with self.assertRaises(InvalidFormat) as ctx:
            convert(_field("email", label="Work Email"), "not-an-email")
        self.assertIn("Work Email", ctx.exception.message)

    def test_select_and_multiselect(self) -> None:
        status = _field("select", options=("new", "won"))
        self.assertEqual(convert(status, "won"), "won")
        with self.assertRaises(InvalidOption):
            convert(status, "lost")
        tags = _field("multiselect", options=("a", "b", "c"))
        self.assertEqual(convert(tags, "a, c"), ["a", "c"])
        self.assertEqual(convert(tags, ["b"]), ["b"])
        with self.assertRaises(InvalidOption):
            convert(tags, ["z"])

    def test_references(self) -> None:
        ref_id = str(uuid.uuid4())
        company = _field("lookup", lookup=LookupTarget(entity="companies"))
        self.assertEqual(convert(company, ref_id), ref_id)
        self.assertEqual(convert(company, {"id": ref_id, "display_label": "Acme"}), ref_id)
        with self.assertRaises(InvalidFormat):
            convert(company, "not-a-uuid")
        with self.assertRaises(ReferenceNotFound):
            convert(company, ref_id, lambda field, value: False)
        seen = []
        convert(company, ref_id, lambda field, value: seen.append(value) or True)
        self.assertEqual(seen, [ref_id])

    def test_unknown_type_passes_through(self) -> None:
        self.assertEqual(convert(_field("geo"), {"lat": 1}), {"lat": 1})

    def test_convert_is_idempotent(self) -> None:
        ref_id = str(uuid.uuid4())
        cases = [
            (_field("text"), "hello"),
            (_field("textarea"), "multi\nline"),
            (_field("url"), "https://example.com"),
            (_field("phone"), "+1 555"),
            (_field("number"), "12.5"),
            (_field("currency"), 10),
            (_field("boolean"), "t"),
            (_field("date"), "2024-05-06"),
            (_field("date"), "2024-05-06T07:08:09Z"),
            (_field("email"), "a.b@example.org"),
            (_field("select", options=("x", "y")), "x"),
            (_field("multiselect", options=("x", "y")), "x,y"),
            (_field("lookup"), {"id": ref_id, "display_label": "Acme"}),
            (_field("file"), ref_id),
            (_field("image"), {"id": ref_id, "original_name": "a.png", "url": "/f/a.png"}),
        ]
        for field, raw in cases:
            once = convert(field, raw)
            self.assertEqual(convert(field, once), once, field.type)


class TestValidatePayload(unittest.TestCase):
    def setUp(self) -> None:
        self.entity = EntityDefinition.from_dict(
            {
                "name": "leads",
                "fields": [
                    {"name": "name", "type": "text", "label": "Name", "required": True},
                    {"name": "age", "type": "number", "label": "Age"},
                    {"name": "salary", "type": "number", "label": "Salary"},
                ],
            }
        )

    def test_missing_required_on_create(self) -> None:
        errors, data = validate_record_payload(self.entity, {}, True)
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], MissingField)
        self.assertEqual(errors[0].path, "name")
        self.assertIn("Name", errors[0].message)
        self.assertEqual(data, {})

    def test_partial_update_only_checks_supplied(self) -> None:
        errors, data = validate_record_payload(self.entity, {"age": "7"}, False)
        self.assertEqual(errors, [])
        self.assertEqual(data, {"age": 7.0})

    def test_update_clears_optional_field(self) -> None:
        errors, data = validate_record_payload(self.entity, {"age": None}, False)
        self.assertEqual(errors, [])
        self.assertEqual(data, {"age": None})
        errors, _ = validate_record_payload(self.entity, {"name": ""}, False)
        self.assertIsInstance(errors[0], MissingField)

    def test_unknown_and_reserved_keys(self) -> None:
        errors, _ = validate_record_payload(self.entity, {"name": "a", "nope": 1}, True)
        self.assertIsInstance(errors[0], UnknownField)
        errors, _ = validate_record_payload(self.entity, {"name": "a", "created_by": "x"}, True)
        self.assertIsInstance(errors[0], FieldNotWritable)

    def test_field_mask_blocks_writes(self) -> None:
        mask = {"name": "read_write", "age": "read_only", "salary": "none"}
        errors, _ = validate_record_payload(self.entity, {"name": "a", "salary": 10}, True, mask)
        self.assertIsInstance(errors[0], FieldNotWritable)
        errors, _ = validate_record_payload(self.entity, {"age": 3}, False, mask)
        self.assertIsInstance(errors[0], FieldNotWritable)
        errors, data = validate_record_payload(self.entity, {"name": "a"}, True, mask)
        self.assertEqual(errors, [])
        self.assertEqual(data, {"name": "a"})


if __name__ == "__main__":
    unittest.main()
