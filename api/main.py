"""
FastAPI Application — webhooks and operator endpoints for the flow engine.

Provides:
- WhatsApp webhook: subscription verification, inbound messages, delivery statuses
- Generic inbound endpoint for other gateways ({contact_id, text | selection})
- Workflow publishing (validated, versioned), listing, activation, deactivation
- Session inspection and reset
- Operator listings: stalled sessions, failed deliveries

Inbound messages are handed to the per-contact dispatcher and acknowledged
immediately; the webhook never waits for a flow to run.
"""
from __future__ import annotations

import json
import structlog
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from channels.base import MessagingGateway
from channels.recording import RecordingGateway
from channels.whatsapp_adapter import WhatsAppGateway
from config.settings import Settings, get_settings
from context.registry import WorkflowRegistry
from context.trigger_matcher import TriggerMatcher
from core.errors import GraphValidationError, SessionNotFoundError, WorkflowNotFoundError
from core.interpreter import FlowInterpreter
from core.session_manager import SessionManager
from database.store_base import BaseFlowStore
from database.store_factory import create_store
from job_queue.dispatcher import InboundDispatcher
from job_queue.timer_service import TimerService
from models.schemas import InboundMessage

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

@dataclass
class Services:
    store: BaseFlowStore
    registry: WorkflowRegistry
    manager: SessionManager
    dispatcher: InboundDispatcher
    gateway: MessagingGateway
    whatsapp: WhatsAppGateway


def build_services(
    settings: Settings,
    store: BaseFlowStore = None,
    gateway: MessagingGateway = None,
    clock: Callable[[], datetime] = None,
) -> Services:
    """Wire the engine components from settings. Explicit arguments win."""
    store = store or create_store(asdict(settings.database))

    wa_config = settings.channels.get("whatsapp")
    whatsapp = WhatsAppGateway(wa_config.credentials if wa_config else {})
    if gateway is None:
        gateway = whatsapp if wa_config and wa_config.enabled else RecordingGateway()

    registry = WorkflowRegistry(
        store, clock=clock, default_timeout_minutes=settings.engine.default_session_timeout_minutes,
    )
    timers = TimerService.from_config(store, settings.timers, clock=clock)
    manager = SessionManager(
        store,
        registry,
        interpreter=FlowInterpreter.from_config(settings.engine),
        timers=timers,
        gateway=gateway,
        matcher=TriggerMatcher(registry),
        config=settings.engine,
        clock=clock,
    )
    dispatcher = InboundDispatcher.from_config(manager.handle_message, settings.dispatcher)
    return Services(store, registry, manager, dispatcher, gateway, whatsapp)


def create_app(
    settings: Settings = None,
    store: BaseFlowStore = None,
    gateway: MessagingGateway = None,
    clock: Callable[[], datetime] = None,
    run_timers: bool = True,
) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or get_settings()
        services = build_services(cfg, store=store, gateway=gateway, clock=clock)
        if store is None and cfg.database.store_backend == "sql":
            from database.session import init_db
            await init_db(cfg.database.url)

        app.state.services = services
        await services.manager.start(background=run_timers)
        logger.info("flow_engine_started",
                    app=cfg.app_name,
                    store=type(services.store).__name__,
                    gateway=services.gateway.name)
        yield

        await services.dispatcher.stop()
        await services.manager.stop()
        await services.gateway.shutdown()
        if services.whatsapp is not services.gateway:
            await services.whatsapp.shutdown()
        await services.store.close()
        logger.info("flow_engine_stopped")

    app = FastAPI(
        title="FlowEngine API",
        description="Chatbot workflow execution engine",
        version="1.0.0",
        lifespan=lifespan,
    )
    _register_routes(app)
    return app


def _services(request: Request) -> Services:
    return request.app.state.services


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class InboundMessageRequest(BaseModel):
    contact_id: str
    text: Optional[str] = None
    selection: Optional[Union[int, str]] = None
    message_id: Optional[str] = None


def _workflow_summary(workflow) -> dict[str, Any]:
    return {
        "id": workflow.id,
        "name": workflow.name,
        "version": workflow.version,
        "is_active": workflow.is_active,
        "trigger_keywords": sorted(workflow.keyword_set()),
        "activated_at": workflow.activated_at.isoformat() if workflow.activated_at else None,
    }


def _register_routes(app: FastAPI):

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(request: Request):
        services = _services(request)
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "gateway": await services.gateway.health_check(),
            "active_contacts": services.dispatcher.active_contacts,
        }

    # ══════════════════════════════════════════════════════════
    #  WEBHOOKS — WhatsApp
    # ══════════════════════════════════════════════════════════

    @app.get("/webhooks/whatsapp")
    async def whatsapp_verify(request: Request):
        challenge = _services(request).whatsapp.verify_webhook(dict(request.query_params))
        if challenge:
            return PlainTextResponse(challenge)
        raise HTTPException(403, "Verification failed")

    @app.post("/webhooks/whatsapp")
    async def whatsapp_webhook(request: Request):
        services = _services(request)
        try:
            body = json.loads(await request.body())
        except ValueError:
            raise HTTPException(400, "Invalid JSON")

        for update in services.whatsapp.parse_statuses(body):
            await services.manager.report_status(update)

        messages = services.whatsapp.parse_inbound(body)
        for message in messages:
            await services.dispatcher.submit(message)
        return {"status": "ok", "messages": len(messages)}

    # ══════════════════════════════════════════════════════════
    #  INBOUND (gateway-neutral)
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/messages/inbound", status_code=202)
    async def receive_inbound_message(req: InboundMessageRequest, request: Request):
        if req.text is None and req.selection is None:
            raise HTTPException(422, "Either text or selection is required")
        message = InboundMessage(
            contact_id=req.contact_id,
            text=req.text,
            selection=req.selection,
            message_id=req.message_id,
        )
        await _services(request).dispatcher.submit(message)
        return {"status": "queued"}

    # ══════════════════════════════════════════════════════════
    #  WORKFLOWS
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/workflows", status_code=201)
    async def publish_workflow(request: Request, activate: bool = True):
        try:
            record = await request.json()
        except ValueError:
            raise HTTPException(400, "Invalid JSON")
        if not isinstance(record, dict):
            raise HTTPException(400, "Workflow record must be an object")
        try:
            compiled = await _services(request).registry.publish(record, activate=activate)
        except GraphValidationError as e:
            raise HTTPException(422, {"workflow_id": e.workflow_id, "errors": e.errors})
        return {**_workflow_summary(compiled.definition), "warnings": compiled.warnings}

    @app.get("/api/v1/workflows")
    async def list_workflows(request: Request):
        return [_workflow_summary(w) for w in await _services(request).registry.list_workflows()]

    @app.post("/api/v1/workflows/{workflow_id}/activate")
    async def activate_workflow(workflow_id: str, request: Request, version: Optional[int] = None):
        try:
            compiled = await _services(request).registry.activate(workflow_id, version)
        except WorkflowNotFoundError as e:
            raise HTTPException(404, str(e))
        except GraphValidationError as e:
            raise HTTPException(422, {"workflow_id": e.workflow_id, "errors": e.errors})
        return _workflow_summary(compiled.definition)

    @app.post("/api/v1/workflows/{workflow_id}/deactivate")
    async def deactivate_workflow(workflow_id: str, request: Request):
        try:
            await _services(request).registry.deactivate(workflow_id)
        except WorkflowNotFoundError as e:
            raise HTTPException(404, str(e))
        return {"status": "deactivated", "workflow_id": workflow_id}

    # ══════════════════════════════════════════════════════════
    #  SESSIONS
    # ══════════════════════════════════════════════════════════

    @app.get("/api/v1/sessions/{contact_id}")
    async def get_session(contact_id: str, request: Request):
        session = await _services(request).manager.get_active_session(contact_id)
        if not session:
            raise HTTPException(404, "No active session")
        return session.model_dump(mode="json")

    @app.post("/api/v1/sessions/{contact_id}/reset")
    async def reset_session(contact_id: str, request: Request):
        try:
            session = await _services(request).manager.reset(contact_id)
        except SessionNotFoundError as e:
            raise HTTPException(404, str(e))
        return {"status": "reset", "session_id": session.id}

    # ══════════════════════════════════════════════════════════
    #  OPERATOR
    # ══════════════════════════════════════════════════════════

    @app.get("/api/v1/operator/stalled")
    async def list_stalled_sessions(request: Request):
        return [s.model_dump(mode="json") for s in await _services(request).manager.list_stalled()]

    @app.get("/api/v1/operator/failed-deliveries")
    async def list_failed_deliveries(request: Request, limit: int = Query(100, le=500)):
        actions = await _services(request).manager.list_failed_deliveries(limit=limit)
        return [a.model_dump(mode="json") for a in actions]


app = create_app()
