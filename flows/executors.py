"""
Node Executors — one async handler per node kind.

Each handler is a function of (node, variables, context) that returns:
  Advance(next_node_id)  continue immediately (None: flow is finished)
  Pause(input_spec)      persist and wait for the next inbound event
  Fail(reason)           unrecoverable for this node

Handlers never mutate the variable store; they return `variables` updates
and `sends` side effects which the interpreter applies. External
collaborator failures (HTTP, calendar) are recorded as data and the flow
advances; only graph-level problems produce Fail.

Dispatch is a table keyed by NodeKind and checked for completeness at
construction, so a new node kind cannot be added without its handler.
"""
from __future__ import annotations

import json
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import structlog

from backend.calendar import CalendarError, CalendarProvider, MockCalendarProvider
from backend.http_client import ExternalHttpClient
from config.settings import CalendarConfig
from flows.models import (
    Advance, CalendarLookupNode, ConditionNode, ExternalCallNode, Fail,
    FlowDefinition, FormNode, MessageNode, NodeContext, NodeKind, Pause,
    QuestionNode, StartNode, StepResult,
)
from flows.naming import shape_output
from flows.resolver import resolve
from models.schemas import OutboundMessage
from utils.conditions import evaluate_predicate, get_nested_value

logger = structlog.get_logger()

MAX_BUTTONS = 3
BUTTON_TITLE_LIMIT = 20
ROW_TITLE_LIMIT = 24
ROW_DESCRIPTION_LIMIT = 72
MAX_LIST_ROWS = 10
PAGE_SIZE = 8
PAGE_PREV = "__PAGE_PREV__"
PAGE_NEXT = "__PAGE_NEXT__"

IdentityLookup = Callable[[str], Awaitable[Optional[str]]]


def _label(item: Any, index: int, field: str = "") -> str:
    if not isinstance(item, dict):
        return str(item) if item not in (None, "") else f"Item {index + 1}"
    for key in (field, "name", "title", "label"):
        if key and item.get(key) not in (None, ""):
            return str(item[key])
    return f"Item {index + 1}"


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value.strip()[:10])
    except (AttributeError, ValueError):
        return datetime.now(timezone.utc).date()


def _parse_body(body: Any, variables: dict[str, Any]) -> Any:
    resolved = resolve(body, variables)
    if isinstance(resolved, str) and resolved.strip():
        try:
            return json.loads(resolved)
        except json.JSONDecodeError:
            return resolved
    return resolved


class NodeExecutors:
    """
    Executes single nodes. Collaborators are injected so tests can swap them.

    Args:
        http_client:      generic outbound HTTP collaborator
        calendar:         availability collaborator
        identity_lookup:  async phone -> identity id, for variable-sourced calendar lookups
        form_screens:     form_id -> screen routing used by the encrypted form endpoint
    """

    def __init__(
        self,
        http_client: Optional[ExternalHttpClient] = None,
        calendar: Optional[CalendarProvider] = None,
        identity_lookup: Optional[IdentityLookup] = None,
        calendar_config: Optional[CalendarConfig] = None,
        default_timeout_s: float = 30.0,
        form_screens: Optional[dict[str, Any]] = None,
    ):
        self.http = http_client or ExternalHttpClient(default_timeout_s)
        self.calendar = calendar or MockCalendarProvider()
        self.identity_lookup = identity_lookup
        self.calendar_config = calendar_config or CalendarConfig()
        self.default_timeout_s = default_timeout_s
        self.form_screens = form_screens or {}

        self._dispatch: dict[str, Callable[..., Awaitable[StepResult]]] = {
            NodeKind.START: self._exec_start,
            NodeKind.MESSAGE: self._exec_message,
            NodeKind.QUESTION: self._exec_question,
            NodeKind.CONDITION: self._exec_condition,
            NodeKind.EXTERNAL_CALL: self._exec_external_call,
            NodeKind.CALENDAR_LOOKUP: self._exec_calendar_lookup,
            NodeKind.FORM: self._exec_form,
        }
        missing = set(NodeKind) - set(self._dispatch)
        if missing:
            raise RuntimeError(f"No executor for node kinds: {sorted(k.value for k in missing)}")

    async def execute(self, node, variables: dict[str, Any], ctx: NodeContext) -> StepResult:
        """Dispatch to the handler for node.kind; unexpected exceptions become Fail."""
        handler = self._dispatch.get(node.kind)
        if handler is None:
            return Fail(reason=f"Unknown node kind: {node.kind}")
        try:
            return await handler(node, variables, ctx)
        except Exception as e:
            logger.error("node_execution_error",
                         node_id=node.id, kind=node.kind, flow_id=ctx.flow.id, error=str(e))
            return Fail(reason=f"{node.kind} node '{node.id}' failed: {e}")

    # ── START ─────────────────────────────────────────

    async def _exec_start(self, node: StartNode, variables: dict, ctx: NodeContext) -> StepResult:
        return Advance(next_node_id=ctx.flow.find_next(node.id))

    # ── MESSAGE ───────────────────────────────────────

    async def _exec_message(self, node: MessageNode, variables: dict, ctx: NodeContext) -> StepResult:
        text = resolve(node.config.text, variables)
        return Advance(
            next_node_id=ctx.flow.find_next(node.id),
            sends=[OutboundMessage(type="text", text=text, node_id=node.id)],
        )

    # ── QUESTION ──────────────────────────────────────

    def _question_options(self, node: QuestionNode, variables: dict) -> tuple[list[dict], list[Any]]:
        """Return ([{id, title, description}], raw dynamic items)."""
        cfg = node.config
        if cfg.dynamic_source:
            items = get_nested_value(variables, cfg.dynamic_source)
            items = items if isinstance(items, list) else []
            options = []
            for i, item in enumerate(items):
                item_id = item.get(cfg.dynamic_id_field) if isinstance(item, dict) else None
                description = ""
                if isinstance(item, dict) and cfg.dynamic_description_field:
                    description = str(item.get(cfg.dynamic_description_field) or "")
                options.append({
                    "id": str(item_id) if item_id not in (None, "") else str(i),
                    "title": _label(item, i, cfg.dynamic_label_field),
                    "description": description,
                })
            return options, items
        if cfg.question_type == "buttons":
            return [
                {"id": b.id or f"btn-{i}", "title": resolve(b.title, variables), "description": ""}
                for i, b in enumerate(cfg.buttons)
            ], []
        if cfg.question_type == "list":
            return [
                {"id": r.id or f"row-{i}", "title": resolve(r.title, variables),
                 "description": resolve(r.description, variables)}
                for i, r in enumerate(cfg.list_items)
            ], []
        return [], []

    def _page_variable(self, node: QuestionNode) -> str:
        return f"{node.config.dynamic_source or node.id}_page"

    def _render_question(self, node: QuestionNode, variables: dict, page: int = 0) -> Pause:
        cfg = node.config
        prompt = resolve(cfg.text, variables)
        options, _ = self._question_options(node, variables)
        extras = {"header": resolve(cfg.header, variables), "footer": resolve(cfg.footer, variables)}

        if cfg.question_type == "text" or not options:
            msg = OutboundMessage(type="text", text=prompt, node_id=node.id)
            return Pause(sends=[msg], input_spec={"input_type": "text", "variable": cfg.variable})

        if cfg.question_type == "buttons":
            buttons = [
                {"id": o["id"], "title": o["title"][:BUTTON_TITLE_LIMIT]}
                for o in options[:MAX_BUTTONS]
            ]
            msg = OutboundMessage(type="buttons", text=prompt, node_id=node.id,
                                  payload={"buttons": buttons, **extras})
            return Pause(sends=[msg], input_spec={
                "input_type": "buttons", "variable": cfg.variable, "options": buttons,
            })

        rows = options
        updates: dict[str, Any] = {}
        if len(options) > MAX_LIST_ROWS:
            pages = (len(options) + PAGE_SIZE - 1) // PAGE_SIZE
            page = max(0, min(page, pages - 1))
            rows = options[page * PAGE_SIZE:(page + 1) * PAGE_SIZE]
            if page > 0:
                rows = rows + [{"id": f"{PAGE_PREV}{page - 1}", "title": "Previous", "description": ""}]
            if page < pages - 1:
                rows = rows + [{"id": f"{PAGE_NEXT}{page + 1}", "title": "Next",
                                "description": f"Page {page + 2} of {pages}"}]
            updates[self._page_variable(node)] = page
        rows = [
            {"id": r["id"], "title": r["title"][:ROW_TITLE_LIMIT],
             "description": (r.get("description") or "")[:ROW_DESCRIPTION_LIMIT]}
            for r in rows
        ]
        msg = OutboundMessage(type="list", text=prompt, node_id=node.id, payload={
            "rows": rows, "button_text": cfg.list_button_text, **extras,
        })
        return Pause(sends=[msg], variables=updates, input_spec={
            "input_type": "list", "variable": cfg.variable, "options": rows,
        })

    async def _exec_question(self, node: QuestionNode, variables: dict, ctx: NodeContext) -> StepResult:
        cfg = node.config
        reply = ctx.user_input
        if reply is None:
            return self._render_question(node, variables)

        selection = reply.selection_id
        if selection and selection.startswith((PAGE_PREV, PAGE_NEXT)):
            page = int(selection.rsplit("__", 1)[-1] or 0)
            return self._render_question(node, variables, page=page)

        options, items = self._question_options(node, variables)
        choice = cfg.question_type in ("buttons", "list") and bool(options)
        if choice and not selection:
            typed = reply.text.strip().lower()
            selection = next((o["id"] for o in options
                              if typed and typed in (o["title"].lower(), o["id"].lower())), None)
            if selection is None:
                logger.info("question_reply_unmatched", node_id=node.id, text=reply.text, flow_id=ctx.flow.id)
                return self._render_question(node, variables)

        value = reply.text
        updates: dict[str, Any] = {}
        if selection:
            for i, option in enumerate(options):
                if option["id"] == selection:
                    value = value or option["title"]
                    if cfg.dynamic_source and i < len(items) and cfg.variable:
                        updates[f"{cfg.variable}_item"] = items[i]
                    break
            value = value or selection

        if cfg.variable:
            updates[cfg.variable] = value
        if ctx.output_name:
            updates[ctx.output_name] = {"response": value}

        handle = selection if choice else None
        next_id = ctx.flow.find_next(node.id, handle)
        if next_id is None and ctx.flow.out_edges(node.id):
            logger.info("question_reply_unmatched",
                        node_id=node.id, selection=selection, flow_id=ctx.flow.id)
            return self._render_question(node, variables)
        return Advance(next_node_id=next_id, variables=updates)

    # ── CONDITION ─────────────────────────────────────

    async def _exec_condition(self, node: ConditionNode, variables: dict, ctx: NodeContext) -> StepResult:
        cfg = node.config
        outcome = evaluate_predicate(cfg.variable, cfg.operator, resolve(cfg.value, variables), variables)
        handle = "true" if outcome else "false"
        if not ctx.flow.out_edges(node.id):
            return Advance(next_node_id=None)
        next_id = ctx.flow.find_next(node.id, handle, strict=True)
        if next_id is None:
            return Fail(reason=f"Condition '{node.id}' has no '{handle}' branch")
        return Advance(next_node_id=next_id)

    # ── EXTERNAL_CALL ─────────────────────────────────

    async def _exec_external_call(self, node: ExternalCallNode, variables: dict, ctx: NodeContext) -> StepResult:
        cfg = node.config
        url = resolve(cfg.url, variables)
        headers = {k: str(v) for k, v in resolve(cfg.headers, variables).items()}
        body = _parse_body(cfg.body, variables) if cfg.body is not None else None
        timeout_s = cfg.timeout / 1000.0 if cfg.timeout else self.default_timeout_s

        result = await self.http.call(cfg.method, url, headers=headers, body=body, timeout=timeout_s)
        data = result.data
        if cfg.response_path and result.ok and data is not None:
            data = get_nested_value(data, cfg.response_path)

        output = {"data": data, "error": result.error, "status": result.status}
        updates: dict[str, Any] = {
            "__last_api_status__": result.status,
            "__last_api_error__": result.error,
        }
        if ctx.output_name:
            updates[ctx.output_name] = shape_output("rest_api", output)
        if cfg.output_variable:
            updates[cfg.output_variable] = data
        if cfg.error_variable:
            updates[cfg.error_variable] = result.error

        logger.info("external_call_completed",
                    node_id=node.id, url=url, status=result.status, error=result.error)
        handle = "success" if result.ok else "error"
        return Advance(next_node_id=ctx.flow.find_next(node.id, handle), variables=updates)

    # ── CALENDAR_LOOKUP ───────────────────────────────

    async def _resolve_calendar_user(self, node: CalendarLookupNode, variables: dict,
                                     flow: FlowDefinition) -> str:
        cfg = node.config
        if cfg.source_type == "owner":
            return flow.owner_id
        if cfg.source_type == "static":
            return cfg.user_id
        raw = str(resolve(cfg.user_variable, variables) or "").strip()
        if raw and self.identity_lookup and raw.lstrip("+").isdigit():
            found = await self.identity_lookup(raw)
            if found:
                return found
        return raw

    async def _exec_calendar_lookup(self, node: CalendarLookupNode, variables: dict, ctx: NodeContext) -> StepResult:
        cfg = node.config
        user_id = await self._resolve_calendar_user(node, variables, ctx.flow)
        day = _parse_date(str(resolve(cfg.date, variables) or ""))
        work_start = cfg.work_start or self.calendar_config.work_start
        work_end = cfg.work_end or self.calendar_config.work_end
        slot_duration = cfg.slot_duration or self.calendar_config.slot_duration_min

        try:
            result = await self.calendar.availability(user_id, day, work_start, work_end, slot_duration)
            output = {"result": result, "error": None}
        except CalendarError as e:
            logger.warning("calendar_lookup_failed", node_id=node.id, user_id=user_id, error=str(e))
            result, output = None, {"result": None, "error": str(e)}

        updates: dict[str, Any] = {}
        if ctx.output_name:
            updates[ctx.output_name] = shape_output("calendar", output)
        if cfg.output_variable:
            updates[cfg.output_variable] = result["slots"] if result else []
        return Advance(next_node_id=ctx.flow.find_next(node.id), variables=updates)

    # ── FORM ──────────────────────────────────────────

    @staticmethod
    def flow_token(state_key: str, node_id: str) -> str:
        return f"{state_key}:{node_id}"

    async def _exec_form(self, node: FormNode, variables: dict, ctx: NodeContext) -> StepResult:
        cfg = node.config
        token = self.flow_token(ctx.state_key, node.id)
        reply = ctx.user_input

        if reply is None:
            msg = OutboundMessage(type="form", text=resolve(cfg.body, variables), node_id=node.id, payload={
                "form_id": cfg.form_id,
                "flow_token": token,
                "cta": cfg.cta,
                "mode": cfg.mode,
                "screen": cfg.initial_screen,
                "data": resolve(cfg.initial_data, variables),
                "header": resolve(cfg.header, variables),
                "footer": resolve(cfg.footer, variables),
            })
            return Pause(sends=[msg], input_spec={"input_type": "form", "form_id": cfg.form_id,
                                                  "flow_token": token})

        if reply.form_response is None or (reply.flow_token and reply.flow_token != token):
            # stray text or another form's reply: keep waiting
            return Pause(input_spec={"input_type": "form", "form_id": cfg.form_id, "flow_token": token})

        response = {k: v for k, v in reply.form_response.items() if k != "flow_token"}
        updates: dict[str, Any] = dict(response)
        if ctx.output_name:
            updates[ctx.output_name] = {"response": response}
        if cfg.output_variable:
            updates[cfg.output_variable] = response
        return Advance(next_node_id=ctx.flow.find_next(node.id), variables=updates)

    # ── FORM DATA EXCHANGE ────────────────────────────

    def form_init(self, form_id: str, node: Optional[FormNode], variables: dict[str, Any]) -> dict[str, Any]:
        """Initial screen for a form; node supplies initialScreen/initialData when known."""
        routing = self.form_screens.get(form_id) or {}
        screen = (node.config.initial_screen if node else "") or routing.get("first_screen", "")
        data = resolve(node.config.initial_data, variables) if node else {}
        return {"screen": screen, "data": data}

    async def _screen_options(self, spec: dict[str, Any], data: dict[str, Any],
                              variables: dict[str, Any], owner_id: str) -> list[Any]:
        source = spec.get("source", "static")
        scope = {**variables, **data}
        if source == "static":
            return list(spec.get("items") or [])
        if source == "calendar":
            user_id = str(data.get("user_id") or resolve(spec.get("user", ""), scope) or owner_id)
            day = _parse_date(str(data.get("date") or resolve(spec.get("date", ""), scope) or ""))
            try:
                slot_duration = int(spec.get("slot_duration", self.calendar_config.slot_duration_min))
                result = await self.calendar.availability(
                    user_id, day,
                    spec.get("work_start", self.calendar_config.work_start),
                    spec.get("work_end", self.calendar_config.work_end),
                    slot_duration,
                )
            except (CalendarError, TypeError, ValueError) as e:
                logger.warning("form_calendar_options_failed", user_id=user_id, error=str(e))
                return []
            return [{"id": s["id"], "title": s["title"]} for s in result["slots"]]
        if source == "http":
            result = await self.http.call(
                spec.get("method", "GET"), resolve(spec["url"], scope),
                headers=resolve(spec.get("headers") or {}, scope),
                timeout=float(spec.get("timeout_ms", self.default_timeout_s * 1000)) / 1000.0,
            )
            if not result.ok:
                logger.warning("form_http_options_failed", url=spec["url"], error=result.error)
                return []
            items = get_nested_value(result.data, spec["response_path"]) if spec.get("response_path") else result.data
            if not isinstance(items, list):
                return []
            return [
                {"id": str(item.get(spec.get("id_field", "id"), i)) if isinstance(item, dict) else str(i),
                 "title": _label(item, i, spec.get("label_field", ""))}
                for i, item in enumerate(items)
            ]
        raise ValueError(f"Unknown option source '{source}'")

    async def form_data_exchange(
        self,
        form_id: str,
        screen: str,
        data: dict[str, Any],
        flow_token: str,
        variables: Optional[dict[str, Any]] = None,
        owner_id: str = "",
    ) -> dict[str, Any]:
        """Route a submitted screen to the next one, fetching its option lists; SUCCESS ends the form."""
        variables = variables or {}
        routing = (self.form_screens.get(form_id) or {}).get("screens") or {}
        current = routing.get(screen) or {}
        next_screen = current.get("next", "SUCCESS")

        if next_screen == "SUCCESS":
            params = {"flow_token": flow_token, **{k: v for k, v in data.items() if k != "flow_token"}}
            return {"screen": "SUCCESS", "data": {"extension_message_response": {"params": params}}}

        return await self.render_screen(form_id, next_screen, data, variables, owner_id)

    async def render_screen(
        self,
        form_id: str,
        screen: str,
        data: dict[str, Any],
        variables: Optional[dict[str, Any]] = None,
        owner_id: str = "",
    ) -> dict[str, Any]:
        """Payload for `screen` with its option list (if any) filled in."""
        routing = (self.form_screens.get(form_id) or {}).get("screens") or {}
        out: dict[str, Any] = dict(data)
        option_spec = (routing.get(screen) or {}).get("options")
        if option_spec:
            out[option_spec.get("field", "options")] = await self._screen_options(
                option_spec, data, variables or {}, owner_id)
        return {"screen": screen, "data": out}
