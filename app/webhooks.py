"""Signed webhook delivery for record events."""

from __future__ import annotations

import hashlib
import hmac
import logging
import uuid
from typing import Any, List

import httpx

from recordbase.canonical_json import canonical_dumps


logger = logging.getLogger("recordbase.webhooks")

USER_AGENT = "recordbase-webhooks/1.0"


def sign(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def build_body(event: dict, delivery_id: str) -> bytes:
    meta = event.get("meta") or {}
    payload = event.get("payload") or {}
    body = {
        "event": event.get("name"),
        "delivery_id": delivery_id,
        "event_id": meta.get("event_id"),
        "occurred_at": meta.get("occurred_at"),
        "entity": meta.get("entity"),
        "record_id": payload.get("record_id"),
        "data": payload.get("record"),
    }
    return canonical_dumps(body).encode("utf-8")


class WebhookNotifier:
    """Posts record events to subscribed endpoints.

    Delivery is best effort: failures are logged and recorded on the store, never
    raised to the publisher. Pass ``client`` to reuse a connection pool (or a mock
    transport in tests).
    """

    def __init__(self, webhook_store: Any, client: httpx.Client | None = None, timeout: float = 10.0) -> None:
        self._store = webhook_store
        self._client = client
        self._timeout = timeout

    def handle_event(self, event: dict) -> List[dict]:
        meta = event.get("meta") or {}
        hooks = self._store.list_active(meta.get("tenant_id"), event.get("name"), meta.get("entity"))
        return [self.deliver(hook, event) for hook in hooks]

    def _post(self, url: str, body: bytes, headers: dict) -> httpx.Response:
        if self._client is not None:
            return self._client.post(url, content=body, headers=headers, timeout=self._timeout)
        with httpx.Client(timeout=self._timeout) as client:
            return client.post(url, content=body, headers=headers)

    def deliver(self, hook: dict, event: dict) -> dict:
        delivery_id = str(uuid.uuid4())
        body = build_body(event, delivery_id)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-Recordbase-Event": event.get("name") or "",
            "X-Recordbase-Delivery": delivery_id,
        }
        for key, value in (hook.get("headers") or {}).items():
            headers[str(key)] = str(value)
        if hook.get("secret"):
            headers["X-Recordbase-Signature"] = sign(hook["secret"], body)

        delivery = {
            "id": delivery_id,
            "webhook_id": hook.get("id"),
            "event": event.get("name"),
            "event_id": (event.get("meta") or {}).get("event_id"),
            "status": "delivered",
            "status_code": None,
            "error": None,
        }
        try:
            resp = self._post(hook["url"], body, headers)
            delivery["status_code"] = resp.status_code
            if resp.status_code >= 400:
                delivery["status"] = "failed"
                delivery["error"] = f"http_{resp.status_code}"
        except httpx.HTTPError as exc:
            delivery["status"] = "failed"
            delivery["error"] = str(exc) or exc.__class__.__name__
        if delivery["status"] == "failed":
            logger.warning(
                "webhook_delivery_failed webhook_id=%s event=%s status_code=%s error=%s",
                hook.get("id"),
                event.get("name"),
                delivery["status_code"],
                delivery["error"],
            )
        else:
            logger.info("webhook_delivered webhook_id=%s event=%s status_code=%s", hook.get("id"), event.get("name"), delivery["status_code"])
        return self._store.record_delivery(delivery)
