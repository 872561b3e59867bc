"""Postgres-backed record and audit stores.

Records live in one table with a JSONB ``data`` column. Predicates from the
filter and condition compilers are translated to SQL by ``predicate_to_sql``;
guard predicates on writes become part of the ``UPDATE ... WHERE`` so the
approval lock holds at the store.
"""

from __future__ import annotations

import copy
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List

from app.db import execute, fetch_all, fetch_one, get_conn
from app.records_validation import parse_date
from recordbase.canonical_json import jsonable
from recordbase.predicate import LOGICAL_OPS, Predicate, PredicateError, and_

logger = logging.getLogger("recordbase.db.records")

SCHEMA_SQL = """
create table if not exists records (
    id uuid primary key,
    tenant_id text not null,
    entity text not null,
    data jsonb not null default '{}'::jsonb,
    approval jsonb,
    created_at timestamptz not null,
    updated_at timestamptz not null,
    created_by text,
    updated_by text,
    deleted boolean not null default false,
    deleted_at timestamptz,
    deleted_by text
);
create index if not exists records_tenant_entity_idx on records (tenant_id, entity, deleted, created_at desc);
create table if not exists record_audit (
    id uuid primary key,
    tenant_id text not null,
    action text not null,
    entity text not null,
    record_id text not null,
    actor_id text,
    changes jsonb not null default '{}'::jsonb,
    timestamp timestamptz not null
);
create index if not exists record_audit_record_idx on record_audit (entity, record_id, timestamp);
"""

# Flat-record keys stored as real columns, with their SQL type family.
_COLUMNS = {
    "id": "text",
    "tenant_id": "text",
    "entity": "text",
    "created_by": "text",
    "updated_by": "text",
    "deleted_by": "text",
    "created_at": "time",
    "updated_at": "time",
    "deleted_at": "time",
    "deleted": "bool",
}


def _json_dumps(value: object) -> str:
    return json.dumps(jsonable(value))


def _quote_key(key: str) -> str:
    # inlined as a literal; psycopg2 treats a bare % as a placeholder
    return "'" + key.replace("'", "''").replace("%", "%%") + "'"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class _SqlBuilder:
    def __init__(self, alias: str = "") -> None:
        self._prefix = f"{alias}." if alias else ""
        self.params: List[Any] = []

    def _col(self, name: str) -> str:
        return f"{self._prefix}{name}"

    def _json_ref(self, path: str) -> tuple[str, str]:
        """(jsonb expression, text expression) for a flat-record path."""
        parts = path.split(".")
        if parts[0] == "_approval":
            base, rest = self._col("approval"), parts[1:]
        else:
            base, rest = self._col("data"), parts
        if not rest:
            return base, f"({base})::text"
        json_expr = base
        for part in rest[:-1]:
            json_expr = f"({json_expr} -> {_quote_key(part)})"
        key = _quote_key(rest[-1])
        return f"({json_expr} -> {key})", f"({json_expr} ->> {key})"

    def _column_cmp(self, name: str, op: str, value: Any) -> str:
        col = self._col(name)
        if name == "id":
            col = f"{col}::text"
        if value is None:
            if op == "=":
                return f"{col} is null"
            return "false"
        if _COLUMNS[name] == "time" and isinstance(value, str):
            value = parse_date(value) or value
        self.params.append(value)
        return f"{col} {op} %s"

    def _data_cmp(self, path: str, op: str, value: Any) -> str:
        if value is None:
            jexpr, _ = self._json_ref(path)
            if op == "=":
                return f"({jexpr} is null or {jexpr} = 'null'::jsonb)"
            return "false"
        if isinstance(value, datetime):
            _, texpr = self._json_ref(path)
            self.params.append(value)
            return f"(case when {texpr} ~ '^\\d{{4}}-\\d{{2}}-\\d{{2}}' then ({texpr})::timestamptz end {op} %s)"
        if _is_number(value) and op != "=":
            jexpr, texpr = self._json_ref(path)
            self.params.append(value)
            return f"(case when jsonb_typeof({jexpr}) = 'number' then ({texpr})::numeric end {op} %s)"
        if op == "=":
            jexpr, _ = self._json_ref(path)
            self.params.append(_json_dumps(value))
            self.params.append(_json_dumps([value]))
            return (
                f"({jexpr} = %s::jsonb or "
                f"(jsonb_typeof({jexpr}) = 'array' and {jexpr} @> %s::jsonb))"
            )
        if isinstance(value, bool):
            return "false"
        _, texpr = self._json_ref(path)
        self.params.append(str(value))
        return f"({texpr} {op} %s)"

    def _cmp(self, path: str, op: str, value: Any) -> str:
        if path in _COLUMNS:
            return self._column_cmp(path, op, value)
        return self._data_cmp(path, op, value)

    def _field(self, path: str, cond: Any) -> str:
        if not (isinstance(cond, dict) and cond and all(str(k).startswith("$") for k in cond)):
            return self._cmp(path, "=", cond)
        clauses: List[str] = []
        for op, value in cond.items():
            if op == "$options":
                continue
            if op == "$eq":
                clauses.append(self._cmp(path, "=", value))
            elif op == "$ne":
                clauses.append(f"not coalesce({self._cmp(path, '=', value)}, false)")
            elif op in {"$gt", "$gte", "$lt", "$lte"}:
                sql_op = {"$gt": ">", "$gte": ">=", "$lt": "<", "$lte": "<="}[op]
                clauses.append(f"coalesce({self._cmp(path, sql_op, value)}, false)")
            elif op in {"$in", "$nin"}:
                if not isinstance(value, list):
                    raise PredicateError(f"{op} requires a list at {path}")
                if value:
                    inner = " or ".join(f"coalesce({self._cmp(path, '=', v)}, false)" for v in value)
                else:
                    inner = "false"
                clauses.append(f"({inner})" if op == "$in" else f"not ({inner})")
            elif op == "$exists":
                if path in _COLUMNS:
                    clause = f"{self._col(path)} is not null"
                else:
                    jexpr, _ = self._json_ref(path)
                    clause = f"({jexpr} is not null and {jexpr} <> 'null'::jsonb)"
                clauses.append(clause if value else f"not ({clause})")
            elif op == "$regex":
                if path in _COLUMNS:
                    texpr = f"{self._col(path)}::text"
                else:
                    _, texpr = self._json_ref(path)
                self.params.append(value)
                regex_op = "~*" if "i" in (cond.get("$options") or "") else "~"
                clauses.append(f"coalesce({texpr} {regex_op} %s, false)")
            else:
                raise PredicateError(f"unknown operator {op} at {path}")
        return "(" + " and ".join(clauses) + ")" if clauses else "true"

    def build(self, predicate: Predicate | None) -> str:
        if not predicate:
            return "true"
        clauses: List[str] = []
        for key, value in predicate.items():
            if key in LOGICAL_OPS:
                parts = [self.build(item) for item in value]
                if key == "$and":
                    clauses.append("(" + " and ".join(parts) + ")" if parts else "true")
                elif key == "$or":
                    clauses.append("(" + " or ".join(parts) + ")" if parts else "false")
                else:
                    clauses.append("not (" + " or ".join(parts) + ")" if parts else "true")
            elif key.startswith("$"):
                raise PredicateError(f"unknown logical operator {key}")
            else:
                clauses.append(self._field(key, value))
        return "(" + " and ".join(clauses) + ")"


def predicate_to_sql(predicate: Predicate | None, alias: str = "") -> tuple[str, list]:
    """Translate a predicate into a parameterized SQL boolean expression."""
    builder = _SqlBuilder(alias)
    sql = builder.build(predicate)
    return sql, builder.params


class DbRecordStore:
    def __init__(self, registry: Any = None) -> None:
        self._registry = registry

    def ensure_schema(self) -> None:
        with get_conn() as conn:
            execute(conn, SCHEMA_SQL, query_name="records.ensure_schema")

    def _decode(self, row: dict) -> dict:
        data = row.get("data") or {}
        if isinstance(data, str):
            data = json.loads(data)
        entity = self._registry.get(row.get("entity")) if self._registry is not None else None
        if entity is not None:
            for field in entity.fields:
                if field.type == "date" and isinstance(data.get(field.name), str):
                    data[field.name] = parse_date(data[field.name]) or data[field.name]
        approval = row.get("approval")
        if isinstance(approval, str):
            approval = json.loads(approval)
        return {
            "id": str(row.get("id")),
            "tenant_id": row.get("tenant_id"),
            "entity": row.get("entity"),
            "data": data,
            "approval": approval,
            "created_at": row.get("created_at"),
            "updated_at": row.get("updated_at"),
            "created_by": row.get("created_by"),
            "updated_by": row.get("updated_by"),
            "deleted": bool(row.get("deleted")),
            "deleted_at": row.get("deleted_at"),
            "deleted_by": row.get("deleted_by"),
        }

    def create(self, doc: dict) -> dict:
        record = copy.deepcopy(doc)
        record.setdefault("id", str(uuid.uuid4()))
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into records (id, tenant_id, entity, data, approval, created_at, updated_at, created_by, updated_by, deleted)
                values (%s,%s,%s,%s::jsonb,%s::jsonb,%s,%s,%s,%s,false)
                returning *
                """,
                [
                    record["id"],
                    record["tenant_id"],
                    record["entity"],
                    _json_dumps(record.get("data") or {}),
                    _json_dumps(record.get("approval")) if record.get("approval") is not None else None,
                    record.get("created_at"),
                    record.get("updated_at"),
                    record.get("created_by"),
                    record.get("updated_by"),
                ],
                query_name="records.create",
            )
        return self._decode(row)

    def find_one(self, entity: str, predicate: Predicate | None) -> dict | None:
        found = self.find(entity, predicate, limit=1, sort_by="id", sort_order="asc")
        return found[0] if found else None

    def _order_by(self, sort_by: str, sort_order: str) -> tuple[str, list]:
        direction = "asc nulls first" if sort_order == "asc" else "desc nulls last"
        if sort_by in _COLUMNS:
            return f"{sort_by} {direction}, id asc", []
        return f"data -> %s {direction}, id asc", [sort_by]

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
        where, params = predicate_to_sql(and_(predicate, forced))
        order, order_params = self._order_by(sort_by, sort_order)
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                f"""
                select *
                from records
                where entity=%s and {where}
                order by {order}
                limit %s offset %s
                """,
                [entity] + params + order_params + [limit, offset],
                query_name="records.find",
            )
        return [self._decode(row) for row in rows]

    def count(self, entity: str, predicate: Predicate | None, forced: Predicate | None = None) -> int:
        where, params = predicate_to_sql(and_(predicate, forced))
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"select count(*) as total from records where entity=%s and {where}",
                [entity] + params,
                query_name="records.count",
            )
        return int((row or {}).get("total") or 0)

    def update(
        self,
        entity: str,
        record_id: str,
        data_changes: dict,
        stamps: dict,
        guard: Predicate | None = None,
    ) -> tuple[dict, dict] | None:
        where, params = predicate_to_sql(guard)
        with get_conn() as conn:
            before = fetch_one(
                conn,
                "select * from records where entity=%s and id::text=%s for update",
                [entity, record_id],
                query_name="records.lock",
            )
            if before is None:
                return None
            row = fetch_one(
                conn,
                f"""
                update records
                set data = data || %s::jsonb, updated_at=%s, updated_by=%s
                where entity=%s and id::text=%s and {where}
                returning *
                """,
                [_json_dumps(data_changes), stamps.get("updated_at"), stamps.get("updated_by"), entity, record_id] + params,
                query_name="records.update",
            )
        if row is None:
            return None
        return self._decode(before), self._decode(row)

    def soft_delete(
        self,
        entity: str,
        record_id: str,
        actor_id: str | None,
        deleted_at: datetime,
        guard: Predicate | None = None,
    ) -> dict | None:
        where, params = predicate_to_sql(guard)
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"""
                update records
                set deleted=true, deleted_at=%s, deleted_by=%s
                where entity=%s and id::text=%s and {where}
                returning *
                """,
                [deleted_at, actor_id, entity, record_id] + params,
                query_name="records.soft_delete",
            )
        return self._decode(row) if row else None

    def set_approval(self, entity: str, record_id: str, approval: dict | None, guard: Predicate | None = None) -> dict | None:
        where, params = predicate_to_sql(guard)
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"update records set approval=%s::jsonb where entity=%s and id::text=%s and {where} returning *",
                [_json_dumps(approval) if approval is not None else None, entity, record_id] + params,
                query_name="records.set_approval",
            )
        return self._decode(row) if row else None


class DbAuditStore:
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
            "changes": jsonable(changes),
            "timestamp": datetime.now(timezone.utc),
        }
        with get_conn() as conn:
            fetch_one(
                conn,
                """
                insert into record_audit (id, tenant_id, action, entity, record_id, actor_id, changes, timestamp)
                values (%s,%s,%s,%s,%s,%s,%s::jsonb,%s)
                returning id
                """,
                [
                    entry["id"],
                    tenant_id,
                    action,
                    entity,
                    record_id,
                    actor_id,
                    json.dumps(entry["changes"]),
                    entry["timestamp"],
                ],
                query_name="record_audit.insert",
            )
        return entry

    def list(self, entity: str | None = None, record_id: str | None = None, limit: int = 200) -> list[dict]:
        clauses = ["true"]
        params: List[Any] = []
        if entity:
            clauses.append("entity=%s")
            params.append(entity)
        if record_id:
            clauses.append("record_id=%s")
            params.append(record_id)
        params.append(limit)
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                f"""
                select * from record_audit
                where {' and '.join(clauses)}
                order by timestamp asc
                limit %s
                """,
                params,
                query_name="record_audit.list",
            )
        out: List[Dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["id"] = str(item.get("id"))
            out.append(item)
        return out
