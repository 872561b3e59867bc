import hashlib
import hmac
import json
import os
import sys
import unittest

import httpx


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.stores import MemoryWebhookStore
from app.webhooks import WebhookNotifier, build_body, sign
from event_bus import make_event


def _event(name: str = "record.created", entity: str = "leads", tenant: str = "t1") -> dict:
    return make_event(
        name,
        {"record_id": "r1", "record": {"id": "r1", "name": "Ada"}, "changes": {}},
        {"tenant_id": tenant, "entity": entity, "actor": {"id": "u1"}},
    )


class TestWebhooks(unittest.TestCase):
    def setUp(self) -> None:
        self.store = MemoryWebhookStore()
        self.requests = []
        self.status = 200

        def handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return httpx.Response(self.status, json={"ok": True})

        self.client = httpx.Client(transport=httpx.MockTransport(handler))
        self.addCleanup(self.client.close)
        self.notifier = WebhookNotifier(self.store, client=self.client)

    def test_signed_delivery(self) -> None:
        hook = self.store.create(
            {"tenant_id": "t1", "url": "https://hooks.example.com/in", "events": ["record.created"], "secret": "s3cret", "headers": {"X-Team": "crm"}}
        )
        deliveries = self.notifier.handle_event(_event())
        self.assertEqual(len(deliveries), 1)
        self.assertEqual(deliveries[0]["status"], "delivered")
        self.assertEqual(deliveries[0]["webhook_id"], hook["id"])

        request = self.requests[0]
        self.assertEqual(str(request.url), "https://hooks.example.com/in")
        self.assertEqual(request.headers["X-Recordbase-Event"], "record.created")
        self.assertEqual(request.headers["X-Team"], "crm")
        body = request.content
        expected = "sha256=" + hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()
        self.assertEqual(request.headers["X-Recordbase-Signature"], expected)
        payload = json.loads(body)
        self.assertEqual(payload["record_id"], "r1")
        self.assertEqual(payload["data"]["name"], "Ada")
        self.assertEqual(payload["delivery_id"], request.headers["X-Recordbase-Delivery"])

    def test_unsigned_without_secret(self) -> None:
        self.store.create({"tenant_id": "t1", "url": "https://a.example.com", "events": ["record.created"]})
        self.notifier.handle_event(_event())
        self.assertNotIn("X-Recordbase-Signature", self.requests[0].headers)

    def test_subscription_filters(self) -> None:
        self.store.create({"tenant_id": "t1", "url": "https://a.example.com", "events": ["record.updated"]})
        self.store.create({"tenant_id": "t2", "url": "https://b.example.com", "events": ["record.created"]})
        self.store.create({"tenant_id": "t1", "url": "https://c.example.com", "events": ["record.created"], "entity": "deals"})
        self.store.create({"tenant_id": "t1", "url": "https://d.example.com", "events": ["record.created"], "active": False})
        self.assertEqual(self.notifier.handle_event(_event()), [])
        self.assertEqual(self.requests, [])

    def test_failures_are_recorded(self) -> None:
        self.status = 500
        hook = self.store.create({"tenant_id": "t1", "url": "https://a.example.com", "events": ["record.created"]})
        with self.assertLogs("recordbase.webhooks", level="WARNING"):
            deliveries = self.notifier.handle_event(_event())
        self.assertEqual(deliveries[0]["status"], "failed")
        self.assertEqual(deliveries[0]["error"], "http_500")
        self.assertEqual(len(self.store.list_deliveries(hook["id"])), 1)

    def test_transport_error_is_recorded(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        notifier = WebhookNotifier(self.store, client=httpx.Client(transport=httpx.MockTransport(refuse)))
        self.store.create({"tenant_id": "t1", "url": "https://a.example.com", "events": ["record.created"]})
        with self.assertLogs("recordbase.webhooks", level="WARNING"):
            deliveries = notifier.handle_event(_event())
        self.assertEqual(deliveries[0]["status"], "failed")
        self.assertIn("refused", deliveries[0]["error"])

    def test_body_is_canonical(self) -> None:
        event = _event()
        body = build_body(event, "d1")
        self.assertEqual(body, build_body(event, "d1"))
        self.assertTrue(body.startswith(b'{"data":'))
        self.assertEqual(sign("k", b"x"), "sha256=" + hmac.new(b"k", b"x", hashlib.sha256).hexdigest())


if __name__ == "__main__":
    unittest.main()
