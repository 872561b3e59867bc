"""Record change events and an in-process event bus."""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from recordbase.canonical_json import canonical_dumps, jsonable


Event = Dict[str, Any]
Handler = Callable[[Event], None]

RECORD_CREATED = "record.created"
RECORD_UPDATED = "record.updated"

logger = logging.getLogger("recordbase.events")


@dataclass
class EventError(Exception):
    message: str

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return self.message


@dataclass
class EventValidationError(EventError):
    code: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


def _raise(code: str, message: str, path: str | None = None) -> None:
    raise EventValidationError(code=code, message=message, path=path)


def _validate_payload(payload: Any) -> None:
    if not isinstance(payload, dict):
        _raise("PAYLOAD_INVALID", "payload must be an object", "payload")
    try:
        canonical_dumps(payload)
    except (TypeError, ValueError) as exc:
        _raise("PAYLOAD_INVALID", str(exc), "payload")
    if not isinstance(payload.get("record_id"), str):
        _raise("PAYLOAD_INVALID", "record_id must be string", "payload.record_id")
    if not isinstance(payload.get("record"), dict):
        _raise("PAYLOAD_INVALID", "record must be object", "payload.record")


def _validate_actor(actor: Any) -> None:
    if actor is None:
        return
    if not isinstance(actor, dict):
        _raise("META_ACTOR_INVALID", "actor must be object or null", "meta.actor")
    if not isinstance(actor.get("id"), str):
        _raise("META_ACTOR_INVALID", "actor.id must be string", "meta.actor.id")


def _validate_occurred_at(value: Any) -> None:
    if not isinstance(value, str):
        _raise("META_OCCURRED_AT_INVALID", "occurred_at must be string", "meta.occurred_at")
    if not value.endswith("Z"):
        _raise("META_OCCURRED_AT_INVALID", "occurred_at must end with 'Z'", "meta.occurred_at")
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        _raise("META_OCCURRED_AT_INVALID", "occurred_at must be ISO8601", "meta.occurred_at")


def validate_event(event: Any) -> None:
    if not isinstance(event, dict):
        _raise("EVENT_INVALID", "event must be object")
    name = event.get("name")
    if not isinstance(name, str) or not name:
        _raise("EVENT_NAME_INVALID", "name must be non-empty string", "name")

    _validate_payload(event.get("payload"))

    meta = event.get("meta")
    if not isinstance(meta, dict):
        _raise("META_INVALID", "meta must be object", "meta")
    if not isinstance(meta.get("event_id"), str):
        _raise("META_EVENT_ID_INVALID", "event_id must be string", "meta.event_id")
    _validate_occurred_at(meta.get("occurred_at"))
    if not isinstance(meta.get("tenant_id"), str):
        _raise("META_TENANT_ID_INVALID", "tenant_id must be string", "meta.tenant_id")
    if not isinstance(meta.get("entity"), str):
        _raise("META_ENTITY_INVALID", "entity must be string", "meta.entity")

    hash_value = meta.get("schema_hash")
    if hash_value is not None and (not isinstance(hash_value, str) or not hash_value.startswith("sha256:")):
        _raise("META_SCHEMA_HASH_INVALID", "schema_hash must start with 'sha256:'", "meta.schema_hash")

    _validate_actor(meta.get("actor"))

    trace_id = meta.get("trace_id")
    if trace_id is not None and not isinstance(trace_id, str):
        _raise("META_TRACE_ID_INVALID", "trace_id must be string or null", "meta.trace_id")

    if meta.get("schema_version") != "1":
        _raise("META_SCHEMA_VERSION_INVALID", "schema_version must be '1'", "meta.schema_version")


def make_event(name: str, payload: dict, meta: dict) -> Event:
    """Build a validated event; typed values in ``payload`` are made JSON-safe."""
    if not isinstance(meta, dict):
        _raise("META_INVALID", "meta must be object", "meta")

    meta_out = copy.deepcopy(meta)
    meta_out.setdefault("event_id", str(uuid.uuid4()))
    if "occurred_at" not in meta_out:
        meta_out["occurred_at"] = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    meta_out.setdefault("schema_version", "1")

    event = {
        "name": name,
        "payload": jsonable(copy.deepcopy(payload)),
        "meta": meta_out,
    }
    validate_event(event)
    return event


class EventBus:
    """Synchronous fan-out to subscribers by event name.

    ``"*"`` subscribers receive every event. A failing handler is logged and does
    not stop delivery to the others.
    """

    def __init__(self, outbox: "Outbox | None" = None) -> None:
        self._outbox = outbox
        self._subs: Dict[str, List[Handler]] = {}
        self._lock = threading.Lock()

    def subscribe(self, name: str, handler: Handler) -> None:
        with self._lock:
            self._subs.setdefault(name, []).append(handler)

    def unsubscribe(self, name: str, handler: Handler) -> bool:
        with self._lock:
            handlers = self._subs.get(name)
            if not handlers:
                return False
            try:
                handlers.remove(handler)
            except ValueError:
                return False
            if not handlers:
                del self._subs[name]
            return True

    def publish(self, event: dict) -> int:
        validate_event(event)
        if self._outbox is not None:
            self._outbox.enqueue(event)
        with self._lock:
            handlers = list(self._subs.get(event["name"], [])) + list(self._subs.get("*", []))
        failures = 0
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                failures += 1
                logger.exception(
                    "event_handler_failed name=%s event_id=%s handler=%s",
                    event["name"],
                    event["meta"].get("event_id"),
                    getattr(handler, "__name__", repr(handler)),
                )
        return failures
