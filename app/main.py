"""FastAPI app exposing the record engine."""

from __future__ import annotations

import logging
import sys
import time
import uuid
from functools import partial
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import anyio
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.access import AccessGate
from app.approvals import ApprovalInitializer
from app.auth import BearerAuthMiddleware
from app.automations_runtime import handle_event as handle_automation_event
from app.config import Settings, load_settings
from app.db import get_db_stats, init_pool, reset_db_stats
from app.dispatch import BackgroundDispatcher
from app.populate import Populator
from app.records import RecordService, RequestContext
from app.stores import (
    MemoryApprovalWorkflowStore,
    MemoryAuditStore,
    MemoryAutomationStore,
    MemoryFileStore,
    MemoryJobStore,
    MemoryPermissionStore,
    MemoryRecordStore,
    MemoryWebhookStore,
)
from app.webhooks import WebhookNotifier
from event_bus import RECORD_CREATED, RECORD_UPDATED, EventBus
from outbox import Outbox
from recordbase.errors import PermissionDenied, RecordError, http_status
from schema_registry import SchemaRegistry


logger = logging.getLogger("recordbase.api")


def build_engine(settings: Settings) -> SimpleNamespace:
    """Wire stores, the event bus and the record service for one process."""
    registry = SchemaRegistry()
    if settings.use_db:
        from app.stores_db import DbAuditStore, DbRecordStore

        init_pool(settings.db_pool_min, settings.db_pool_max, settings.database_url)
        record_store = DbRecordStore(registry)
        record_store.ensure_schema()
        audit_store = DbAuditStore()
    else:
        record_store = MemoryRecordStore()
        audit_store = MemoryAuditStore()

    permission_store = MemoryPermissionStore()
    file_store = MemoryFileStore()
    workflow_store = MemoryApprovalWorkflowStore()
    webhook_store = MemoryWebhookStore()
    automation_store = MemoryAutomationStore()
    job_store = MemoryJobStore()

    outbox = Outbox()
    bus = EventBus(outbox)
    notifier = WebhookNotifier(webhook_store, timeout=settings.webhook_timeout_s)
    on_automation = partial(handle_automation_event, automation_store, job_store)
    for name in (RECORD_CREATED, RECORD_UPDATED):
        bus.subscribe(name, on_automation)
        bus.subscribe(name, notifier.handle_event)

    dispatcher = BackgroundDispatcher(settings.dispatch_max_pending, settings.dispatch_workers)
    access = AccessGate(permission_store, settings.condition_depth_limit)
    service = RecordService(
        registry,
        record_store,
        access,
        audit_store,
        populator=Populator(record_store, file_store),
        approvals=ApprovalInitializer(workflow_store),
        event_bus=bus,
        dispatcher=dispatcher,
        file_store=file_store,
        default_page_size=settings.default_page_size,
        max_page_size=settings.max_page_size,
    )
    return SimpleNamespace(
        settings=settings,
        registry=registry,
        records=record_store,
        audit=audit_store,
        permissions=permission_store,
        files=file_store,
        workflows=workflow_store,
        webhooks=webhook_store,
        automations=automation_store,
        jobs=job_store,
        outbox=outbox,
        bus=bus,
        dispatcher=dispatcher,
        service=service,
    )


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _ok_response(payload: dict, warnings: list | None = None, status: int = 200) -> JSONResponse:
    body = {"ok": True, **payload, "errors": [], "warnings": warnings or []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _record_error_response(exc: RecordError) -> JSONResponse:
    body = {"ok": False, "errors": [exc.to_issue()], "warnings": []}
    return JSONResponse(jsonable_encoder(body), status_code=http_status(exc))


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return None


def create_app(settings: Settings | None = None, engine: SimpleNamespace | None = None) -> FastAPI:
    settings = settings or load_settings()
    engine = engine or build_engine(settings)
    app = FastAPI(title="recordbase")
    app.state.engine = engine
    app.add_middleware(
        BearerAuthMiddleware,
        issuer_url=settings.auth_issuer_url,
        audience=settings.auth_audience,
        disabled=settings.disable_auth,
    )

    @app.middleware("http")
    async def timing_middleware(request: Request, call_next):
        reset_db_stats()
        start = time.perf_counter()
        response = await call_next(request)
        total_ms = (time.perf_counter() - start) * 1000
        db_stats = get_db_stats()
        logger.info(
            "%s %s %s total_ms=%.1f auth_ms=%.1f db_ms=%.1f db_q=%s",
            request.method,
            request.url.path,
            response.status_code,
            total_ms,
            getattr(request.state, "auth_ms", 0.0),
            db_stats.get("total_ms", 0.0),
            db_stats.get("queries", 0),
        )
        return response

    @app.exception_handler(RecordError)
    async def record_error_handler(request: Request, exc: RecordError) -> JSONResponse:
        return _record_error_response(exc)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("request_failed path=%s", request.url.path)
        return _error_response("INTERNAL_ERROR", "internal error", status=500)

    def _context(request: Request) -> RequestContext:
        user = getattr(request.state, "user", None)
        if isinstance(user, dict):
            user_id, tenant_id = user.get("id"), user.get("tenant_id")
        elif settings.disable_auth:
            user_id = request.headers.get("X-User-Id")
            tenant_id = request.headers.get("X-Tenant-Id")
        else:
            user_id = tenant_id = None
        if not user_id or not tenant_id:
            raise PermissionDenied("acting user and tenant are required", "user")
        trace_id = request.headers.get("X-Trace-Id") or str(uuid.uuid4())
        return RequestContext.with_timeout(tenant_id, user_id, settings.request_timeout_s, trace_id)

    async def _run(fn, *args):
        return await anyio.to_thread.run_sync(partial(fn, *args))

    @app.get("/health")
    async def health() -> dict:
        return {"ok": True, "dispatch": engine.dispatcher.stats()}

    @app.get("/schemas")
    async def list_schemas() -> JSONResponse:
        return _ok_response({"entities": [item.to_dict() for item in engine.registry.list()]})

    @app.put("/schemas/{entity}")
    async def upsert_schema(entity: str, request: Request) -> JSONResponse:
        body = await _json_body(request)
        if not isinstance(body, dict):
            return _error_response("SCHEMA_INVALID", "definition must be an object", "definition")
        body = {**body, "name": entity}
        user = getattr(request.state, "user", None)
        actor_id = user.get("id") if isinstance(user, dict) else request.headers.get("X-User-Id")
        result = engine.registry.upsert(body, actor={"id": actor_id} if actor_id else None, reason=body.get("reason"))
        if not result.get("ok"):
            return JSONResponse(jsonable_encoder(result), status_code=400)
        return _ok_response(
            {"entity": result["entity"].to_dict(), "schema_hash": result["schema_hash"]},
            warnings=result.get("warnings"),
        )

    @app.post("/records/{entity}")
    async def create_record(entity: str, request: Request) -> JSONResponse:
        body = await _json_body(request)
        if not isinstance(body, dict):
            return _error_response("INVALID_TYPE", "record body must be an object", "data")
        ctx = _context(request)
        record = await _run(engine.service.create, ctx, entity, body)
        return _ok_response({"record": record}, status=201)

    @app.post("/records/{entity}/query")
    async def query_records(entity: str, request: Request) -> JSONResponse:
        body = await _json_body(request) or {}
        if not isinstance(body, dict):
            return _error_response("INVALID_TYPE", "query body must be an object", "query")
        ctx = _context(request)
        filters = body.get("filters")
        if filters is not None and not isinstance(filters, list):
            return _error_response("INVALID_TYPE", "filters must be a list", "filters")
        result = await _run(
            partial(
                engine.service.list,
                ctx,
                entity,
                filters,
                page=body.get("page", 1),
                limit=body.get("limit"),
                sort_by=body.get("sort_by"),
                sort_order=body.get("sort_order"),
                action=body.get("action") or "read",
            )
        )
        return _ok_response(result)

    @app.get("/records/{entity}/{record_id}")
    async def get_record(entity: str, record_id: str, request: Request) -> JSONResponse:
        ctx = _context(request)
        record = await _run(engine.service.get, ctx, entity, record_id)
        return _ok_response({"record": record})

    @app.put("/records/{entity}/{record_id}")
    async def update_record(entity: str, record_id: str, request: Request) -> JSONResponse:
        body = await _json_body(request)
        if not isinstance(body, dict):
            return _error_response("INVALID_TYPE", "record body must be an object", "data")
        ctx = _context(request)
        record = await _run(engine.service.update, ctx, entity, record_id, body)
        return _ok_response({"record": record})

    @app.delete("/records/{entity}/{record_id}")
    async def delete_record(entity: str, record_id: str, request: Request) -> JSONResponse:
        ctx = _context(request)
        await _run(engine.service.delete, ctx, entity, record_id)
        return _ok_response({"deleted": record_id})

    @app.post("/records/{entity}/{record_id}/approval")
    async def decide_approval(entity: str, record_id: str, request: Request) -> JSONResponse:
        body = await _json_body(request) or {}
        if not isinstance(body, dict):
            return _error_response("INVALID_TYPE", "approval body must be an object", "approval")
        ctx = _context(request)
        record = await _run(engine.service.decide_approval, ctx, entity, record_id, body.get("action"), body.get("comment"))
        return _ok_response({"record": record})

    return app


logging.basicConfig(level=logging.INFO)
app = create_app()
