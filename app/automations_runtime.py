from __future__ import annotations

import logging
from typing import Any

from app.automations import match_event

logger = logging.getLogger("recordbase.automations_runtime")


def handle_event(automation_store: Any, job_store: Any, event: dict) -> list[dict]:
    event_type = event.get("name")
    if not isinstance(event_type, str):
        return []
    payload = event.get("payload") or {}
    meta = event.get("meta") or {}
    tenant_id = meta.get("tenant_id")
    entity = meta.get("entity")
    logger.info("automation_event_received event=%s tenant_id=%s entity=%s", event_type, tenant_id, entity)
    automations = automation_store.list(status="published", tenant_id=tenant_id)
    if not automations:
        logger.info("automation_no_published event=%s tenant_id=%s", event_type, tenant_id)
        return []
    runs = []
    for automation in automations:
        trigger = automation.get("trigger") or {}
        if not match_event(trigger, event_type, payload, entity):
            continue
        run = automation_store.create_run(
            {
                "automation_id": automation.get("id"),
                "tenant_id": tenant_id,
                "status": "queued",
                "trigger_event_id": meta.get("event_id"),
                "trigger_type": event_type,
                "trigger_payload": payload,
            }
        )
        job_store.enqueue(
            {
                "type": "automation.run",
                "tenant_id": tenant_id,
                "payload": {"run_id": run.get("id")},
                "idempotency_key": run.get("id"),
            }
        )
        logger.info(
            "automation_enqueued run_id=%s automation_id=%s tenant_id=%s",
            run.get("id"),
            automation.get("id"),
            tenant_id,
        )
        runs.append(run)
    return runs
