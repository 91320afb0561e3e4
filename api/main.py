"""
FastAPI Application — webhooks, form endpoint, live test harness, admin.

Provides:
- GET/POST /webhook                   provider verification handshake + event ingestion
- POST /form-endpoint                 encrypted form data exchange
- /api/v1/flows                       save / fetch / activate flow definitions
- /api/v1/conversations/{id}/...      operator stop / skip / reset
- /api/v1/test-sessions               live test harness (REST) + /ws/test-sessions/{id}
- GET /health
"""
from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

import structlog
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from backend.calendar import create_calendar_provider
from backend.http_client import ExternalHttpClient
from channels.base import OutboundSender
from channels.whatsapp_adapter import WhatsAppSender, verify_webhook
from config.settings import Settings, get_settings
from database.store_base import BaseStateStore
from database.store_factory import SQL_BACKENDS, create_store
from flows.executors import NodeExecutors
from flows.interpreter import FlowInterpreter, StepOutcome
from flows.expiry import ExpirySweeper
from flows.registry import FlowRegistry
from forms.crypto import load_private_key, load_private_key_file
from forms.endpoint import FormEndpointHandler
from harness.gateway import SessionGateway
from harness.live_test import LiveTestHarness
from models.errors import ExecutorError, IngestionError, ValidationError
from utils.locks import KeyedLock
from webhooks.ingestion import WebhookIngestionPipeline

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

class Services:
    """Everything the routes need, built once per app in the lifespan."""

    def __init__(self, settings: Settings, store: BaseStateStore, sender: OutboundSender,
                 registry: Optional[FlowRegistry] = None):
        self.settings = settings
        self.store = store
        self.sender = sender
        self.registry = registry or FlowRegistry()
        self.locks = KeyedLock()
        self.http = ExternalHttpClient(settings.engine.default_http_timeout_s)
        self.calendar = create_calendar_provider(settings.calendar)

        async def lookup_identity(phone: str) -> Optional[str]:
            identity = await store.find_identity_by_phone(phone)
            return identity.id if identity else None

        self.executors = NodeExecutors(
            http_client=self.http,
            calendar=self.calendar,
            identity_lookup=lookup_identity,
            calendar_config=settings.calendar,
            default_timeout_s=settings.engine.default_http_timeout_s,
            form_screens=settings.forms.screens,
        )
        self.interpreter = FlowInterpreter(
            store, self.registry, self.executors, sender,
            max_steps=settings.engine.max_steps, locks=self.locks,
            form_timeout_min=settings.engine.form_timeout_min,
            question_timeout_min=settings.engine.question_timeout_min,
        )
        self.sweeper = ExpirySweeper(self.interpreter, settings.engine.expiry_sweep_interval_s)
        # same locks: a test session and an operator action on it must not interleave
        harness_interpreter = FlowInterpreter(
            store, self.registry, self.executors, sender,
            max_steps=settings.harness.max_total_steps,
            max_node_visits=settings.harness.max_node_visits,
            locks=self.locks,
        )
        self.ingestion = WebhookIngestionPipeline(
            store, self.interpreter,
            app_secret=settings.whatsapp.app_secret,
            signature_mode=settings.whatsapp.signature_mode,
            business_phone=settings.whatsapp.business_phone,
            business_name=settings.engine.business_display_name,
        )
        self.forms = FormEndpointHandler(
            _load_form_key(settings), self.executors, store, self.registry,
            flip_iv=settings.forms.flip_response_iv,
        )
        self.gateway = SessionGateway()
        self.harness = LiveTestHarness(
            harness_interpreter, store, self.gateway,
            live_sender=sender, default_phone=settings.harness.default_test_phone,
            max_finished=settings.harness.max_finished_sessions,
        )

    async def close(self):
        await self.sweeper.stop()
        await self.http.close()
        await self.calendar.close()
        await self.sender.close()
        await self.store.close()


def _load_form_key(settings: Settings):
    cfg = settings.forms
    try:
        if cfg.private_key_pem:
            return load_private_key(cfg.private_key_pem, cfg.private_key_passphrase)
        if cfg.private_key_path:
            return load_private_key_file(cfg.private_key_path, cfg.private_key_passphrase)
    except (OSError, ValueError, TypeError) as e:
        logger.error("form_private_key_load_failed", error=str(e))
        return None
    logger.warning("form_private_key_missing")
    return None


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[BaseStateStore] = None,
    sender: Optional[OutboundSender] = None,
    registry: Optional[FlowRegistry] = None,
) -> FastAPI:
    """Build the app. Tests inject a store/sender/registry; production uses config."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or get_settings()
        state_store = store or create_store(cfg.database)
        if store is None and cfg.database.backend in SQL_BACKENDS:
            from database.session import init_db
            await init_db()

        services = Services(cfg, state_store, sender or WhatsAppSender(cfg.whatsapp), registry)
        if cfg.flows.definitions_dir:
            services.registry.load_directory(cfg.flows.definitions_dir)
        await services.registry.load_store(state_store)
        if cfg.flows.active_flow_id and services.registry.get(cfg.flows.active_flow_id):
            services.registry.activate(cfg.flows.active_flow_id)
        app.state.services = services
        await services.sweeper.start()

        logger.info("flow_engine_started",
                    store=type(state_store).__name__,
                    flows=len(services.registry.list_all()),
                    active_flow=services.registry.active.id if services.registry.active else None)
        yield

        await services.close()
        if store is None and cfg.database.backend in SQL_BACKENDS:
            from database.session import close_db
            await close_db()
        logger.info("flow_engine_stopped")

    app = FastAPI(
        title="WhatsApp Flow Engine API",
        description="Conversational flow execution over WhatsApp",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _register_routes(app)
    return app


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class TestSessionStartRequest(BaseModel):
    __test__ = False

    flow_id: str
    selected_user_id: str = ""
    test_phone: str = ""
    test_mode: str = "simulate"
    notes: str = ""
    variables: dict[str, Any] = Field(default_factory=dict)


class TestInputRequest(BaseModel):
    __test__ = False

    text: str = ""
    button_id: Optional[str] = None
    list_row_id: Optional[str] = None
    form_response: Optional[dict[str, Any]] = None


def _outcome_body(outcome: StepOutcome) -> dict[str, Any]:
    state = outcome.state
    return {
        "conversation_id": state.conversation_id if state else None,
        "status": state.status.value if state else None,
        "current_node_id": state.current_node_id if state else None,
        "sent": len(outcome.sent),
        "blocked": len(outcome.blocked),
        "failed": len(outcome.failed),
        "fault": outcome.fault,
    }


def _services(request: Request) -> Services:
    return request.app.state.services


def _register_routes(app: FastAPI) -> None:

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(request: Request):
        svc = _services(request)
        active = svc.registry.active
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "store": type(svc.store).__name__,
            "flows": len(svc.registry.list_all()),
            "active_flow": active.id if active else None,
            "forms_enabled": svc.forms.private_key is not None,
            "test_sessions": svc.harness.active_sessions,
        }

    # ══════════════════════════════════════════════════════════
    #  WEBHOOKS - WhatsApp
    # ══════════════════════════════════════════════════════════

    @app.get("/webhook")
    async def webhook_verify(request: Request):
        svc = _services(request)
        challenge = verify_webhook(dict(request.query_params), svc.settings.whatsapp.verify_token)
        if challenge is None:
            logger.warning("webhook_verification_failed")
            raise HTTPException(403, "Verification failed")
        return PlainTextResponse(challenge)

    @app.post("/webhook")
    async def webhook_receive(request: Request):
        svc = _services(request)
        body = await request.body()
        try:
            await svc.ingestion.ingest(body, request.headers.get("X-Hub-Signature-256"))
        except IngestionError as e:
            raise HTTPException(401, str(e))
        return {"success": True}

    # ══════════════════════════════════════════════════════════
    #  FORM ENDPOINT
    # ══════════════════════════════════════════════════════════

    @app.post("/form-endpoint")
    async def form_endpoint(request: Request):
        svc = _services(request)
        try:
            payload = json.loads(await request.body() or b"{}")
        except (json.JSONDecodeError, UnicodeDecodeError):
            return JSONResponse({"error": "Request body is not JSON"}, status_code=400)
        status, content = await svc.forms.handle(payload)
        if isinstance(content, str):
            return PlainTextResponse(content, status_code=status)
        return JSONResponse(content, status_code=status)

    # ══════════════════════════════════════════════════════════
    #  FLOWS
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/flows")
    async def save_flow(request: Request):
        svc = _services(request)
        try:
            flow = svc.registry.save(await request.json())
        except ValidationError as e:
            return JSONResponse({"errors": e.errors}, status_code=422)
        except PydanticValidationError as e:
            return JSONResponse({"errors": [err["msg"] for err in e.errors()]}, status_code=422)
        await svc.registry.persist(svc.store)
        return flow.model_dump(mode="json", by_alias=True)

    @app.get("/api/v1/flows")
    async def list_flows(request: Request):
        return [
            {"id": f.id, "name": f.name, "version": f.version, "is_active": f.is_active}
            for f in _services(request).registry.list_all()
        ]

    @app.get("/api/v1/flows/{flow_id}")
    async def get_flow(flow_id: str, request: Request):
        flow = _services(request).registry.get(flow_id)
        if flow is None:
            raise HTTPException(404, "Flow not found")
        return flow.model_dump(mode="json", by_alias=True)

    @app.post("/api/v1/flows/{flow_id}/activate")
    async def activate_flow(flow_id: str, request: Request):
        svc = _services(request)
        try:
            flow = svc.registry.activate(flow_id)
        except KeyError:
            raise HTTPException(404, "Flow not found")
        await svc.registry.persist(svc.store)
        return {"id": flow.id, "is_active": flow.is_active}

    @app.delete("/api/v1/flows/{flow_id}")
    async def delete_flow(flow_id: str, request: Request):
        svc = _services(request)
        if not svc.registry.remove(flow_id):
            raise HTTPException(404, "Flow not found")
        await svc.store.delete_flow(flow_id)
        return {"id": flow_id, "deleted": True}

    # ══════════════════════════════════════════════════════════
    #  CONVERSATIONS - operator controls
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/conversations/{conversation_id}/stop")
    async def stop_conversation(conversation_id: str, request: Request):
        state = await _services(request).interpreter.stop(conversation_id)
        if state is None:
            raise HTTPException(404, "No execution for conversation")
        return {"conversation_id": conversation_id, "status": state.status.value,
                "reason": state.completion_reason}

    @app.post("/api/v1/conversations/{conversation_id}/skip")
    async def skip_node(conversation_id: str, request: Request):
        try:
            outcome = await _services(request).interpreter.skip_current_node(conversation_id)
        except KeyError:
            raise HTTPException(404, "No execution for conversation")
        except ExecutorError as e:
            raise HTTPException(409, str(e))
        return _outcome_body(outcome)

    @app.post("/api/v1/conversations/{conversation_id}/reset")
    async def reset_conversation(conversation_id: str, request: Request):
        removed = await _services(request).interpreter.reset(conversation_id)
        return {"conversation_id": conversation_id, "removed": removed}

    # ══════════════════════════════════════════════════════════
    #  LIVE TEST HARNESS
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/test-sessions")
    async def start_test_session(req: TestSessionStartRequest, request: Request):
        try:
            return await _services(request).harness.start(
                req.flow_id, selected_user_id=req.selected_user_id, test_phone=req.test_phone,
                test_mode=req.test_mode, notes=req.notes, variables=req.variables,
            )
        except KeyError:
            raise HTTPException(404, "Flow not found")
        except ValueError as e:
            raise HTTPException(400, str(e))

    @app.get("/api/v1/test-sessions/{session_id}")
    async def get_test_session(session_id: str, request: Request):
        try:
            return await _services(request).harness.snapshot(session_id)
        except KeyError:
            raise HTTPException(404, "Test session not found")

    @app.post("/api/v1/test-sessions/{session_id}/input")
    async def test_session_input(session_id: str, req: TestInputRequest, request: Request):
        try:
            return await _services(request).harness.send_input(
                session_id, text=req.text, button_id=req.button_id,
                list_row_id=req.list_row_id, form_response=req.form_response,
            )
        except KeyError:
            raise HTTPException(404, "Test session not found")
        except ExecutorError as e:
            raise HTTPException(409, str(e))

    @app.post("/api/v1/test-sessions/{session_id}/{action}")
    async def test_session_control(session_id: str, action: str, request: Request):
        harness = _services(request).harness
        handlers = {"pause": harness.pause, "resume": harness.resume, "stop": harness.stop}
        if action not in handlers:
            raise HTTPException(404, f"Unknown action '{action}'")
        try:
            return await handlers[action](session_id)
        except KeyError:
            raise HTTPException(404, "Test session not found")

    @app.websocket("/ws/test-sessions/{session_id}")
    async def test_session_ws(websocket: WebSocket, session_id: str):
        svc: Services = websocket.app.state.services
        await websocket.accept()
        try:
            snapshot = await svc.harness.snapshot(session_id)
        except KeyError:
            await websocket.send_json({"event": "error", "payload": {"message": "Test session not found"}})
            await websocket.close()
            return

        svc.gateway.subscribe(session_id, websocket)
        await svc.gateway.send_to(websocket, session_id, "state-recovery", snapshot)
        try:
            while True:
                try:
                    data = json.loads(await websocket.receive_text())
                except json.JSONDecodeError:
                    await svc.gateway.send_to(websocket, session_id, "error", {"message": "Frame is not JSON"})
                    continue
                kind = data.get("type") if isinstance(data, dict) else None
                try:
                    if kind == "input":
                        await svc.harness.send_input(
                            session_id, text=data.get("text", ""),
                            button_id=data.get("button_id"), list_row_id=data.get("list_row_id"),
                            form_response=data.get("form_response"),
                        )
                    elif kind in ("pause", "resume", "stop"):
                        await getattr(svc.harness, kind)(session_id)
                    elif kind == "recover":
                        await svc.gateway.send_to(websocket, session_id, "state-recovery",
                                                  await svc.harness.snapshot(session_id))
                except ExecutorError as e:
                    await svc.gateway.send_to(websocket, session_id, "error", {"message": str(e)})
        except WebSocketDisconnect:
            pass
        finally:
            svc.gateway.unsubscribe(session_id, websocket)


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.main:app", host="0.0.0.0", port=8000, reload=True)
