"""
Form endpoint — decrypt, dispatch by action, re-encrypt.

    ping               → {"version": "3.1", "data": {"status": "active"}}
    INIT               → first screen of the form the flow token points at
    data_exchange      → next screen (with option lists) or SUCCESS
    BACK               → current screen re-rendered
    error_notification → {"data": {"acknowledged": true}}

The flow token is "{state_key}:{node_id}" as minted by the form node, so
the paused ExecutionState supplies the form id, initial data and variables.
Decryption failures cannot be answered encrypted and come back as plain
JSON with ProtocolError.http_status.
"""
from __future__ import annotations

from typing import Any, Optional

import structlog

from database.store_base import BaseStateStore
from flows.executors import NodeExecutors
from flows.models import FormNode
from flows.registry import FlowRegistry
from forms.crypto import decrypt_request, encrypt_response
from models.errors import ProtocolError

logger = structlog.get_logger()

PROTOCOL_VERSION = "3.1"


class FormContext:
    """What a flow token resolves to. Every field is optional."""

    def __init__(self, form_id: str = "", node: Optional[FormNode] = None,
                 variables: Optional[dict[str, Any]] = None, owner_id: str = ""):
        self.form_id = form_id
        self.node = node
        self.variables = variables or {}
        self.owner_id = owner_id


class FormEndpointHandler:
    def __init__(
        self,
        private_key,
        executors: NodeExecutors,
        store: BaseStateStore,
        registry: FlowRegistry,
        flip_iv: bool = False,
    ):
        self.private_key = private_key
        self.executors = executors
        self.store = store
        self.registry = registry
        self.flip_iv = flip_iv

    async def handle(self, payload: dict[str, Any]) -> tuple[int, Any]:
        """Returns (http_status, content). Content is the base64 string on success."""
        if self.private_key is None:
            logger.error("form_endpoint_no_private_key")
            return 500, {"error": "Form endpoint is not configured"}
        try:
            request = decrypt_request(payload if isinstance(payload, dict) else {}, self.private_key)
        except ProtocolError as e:
            logger.warning("form_request_decrypt_failed", error=str(e))
            return e.http_status, {"error": str(e)}

        try:
            response = await self.dispatch(request.body)
        except ProtocolError as e:
            logger.warning("form_request_rejected", action=request.body.get("action"), error=str(e))
            response = {"error": str(e)}
        except Exception as e:
            logger.error("form_request_failed", action=request.body.get("action"), error=str(e))
            response = {"error": "Internal error"}
        return 200, encrypt_response(response, request.aes_key, request.iv, self.flip_iv)

    async def dispatch(self, body: dict[str, Any]) -> dict[str, Any]:
        action = body.get("action")
        if action == "ping":
            return {"version": PROTOCOL_VERSION, "data": {"status": "active"}}
        if action == "error_notification":
            logger.warning("form_client_error", flow_token=body.get("flow_token"), data=body.get("data"))
            return {"data": {"acknowledged": True}}

        token = str(body.get("flow_token") or "")
        ctx = await self.resolve_token(token, body)
        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        screen = str(body.get("screen") or "")

        if action == "INIT":
            return self.executors.form_init(ctx.form_id, ctx.node, ctx.variables)
        if action == "data_exchange":
            return await self.executors.form_data_exchange(
                ctx.form_id, screen, data, token, ctx.variables, ctx.owner_id)
        if action == "BACK":
            if not screen:
                return self.executors.form_init(ctx.form_id, ctx.node, ctx.variables)
            return await self.executors.render_screen(ctx.form_id, screen, data, ctx.variables, ctx.owner_id)
        raise ProtocolError(f"Unknown action '{action}'")

    async def resolve_token(self, token: str, body: dict[str, Any]) -> FormContext:
        ctx = FormContext(form_id=str(body.get("form_id") or ""))
        if ":" in token:
            # state keys may contain ':' themselves (test:<uuid>)
            state_key, node_id = token.rsplit(":", 1)
            state = await self.store.get_state(state_key)
            if state is not None:
                ctx.variables = dict(state.variables)
                flow = self.registry.get(state.flow_id)
                node = flow.get_node(node_id) if flow else None
                if flow is not None:
                    ctx.owner_id = flow.owner_id
                if isinstance(node, FormNode):
                    ctx.node = node
                    ctx.form_id = node.config.form_id
        if not ctx.form_id and len(self.executors.form_screens) == 1:
            ctx.form_id = next(iter(self.executors.form_screens))
        if not ctx.form_id:
            logger.info("form_token_unresolved", flow_token=token)
        return ctx
