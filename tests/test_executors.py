"""
Tests for the per-kind node executors.

Covers:
  - message / question rendering (buttons, lists, pagination, dynamic options)
  - condition branching
  - external_call outcomes as data (success, non-2xx, timeout, unsendable URL)
  - calendar_lookup user resolution and the REST calendar retry policy
  - form dispatch, completion and the data-exchange screen routing
"""
import asyncio
import json
from datetime import date

import httpx
import pytest
from pydantic import ValidationError as PydanticValidationError

from backend.calendar import CalendarError, MockCalendarProvider, RESTCalendarProvider, build_slots
from backend.http_client import ExternalHttpClient, is_retryable
from config.settings import CalendarConfig
from flows.executors import PAGE_NEXT, NodeExecutors
from flows.models import Advance, Fail, FlowDefinition, NodeContext, Pause
from models.schemas import UserInput
from tests.helpers import make_flow


def _flow(nodes, edges, **extra) -> FlowDefinition:
    return FlowDefinition.model_validate(make_flow("t", [{"id": "start", "kind": "start"}, *nodes],
                                                   [("start", nodes[0]["id"]), *edges], **extra))


def _ctx(flow, node_id, output_name="", user_input=None) -> NodeContext:
    return NodeContext(flow=flow, node_id=node_id, state_key="conv-1",
                       output_name=output_name, user_input=user_input)


async def _run(executors, flow, node_id, variables=None, output_name="", user_input=None):
    return await executors.execute(flow.get_node(node_id), variables or {},
                                   _ctx(flow, node_id, output_name, user_input))


def _http(handler) -> ExternalHttpClient:
    return ExternalHttpClient(default_timeout_s=5, transport=httpx.MockTransport(handler))


class TestMessageAndQuestion:
    @pytest.mark.asyncio
    async def test_message_resolves_template(self):
        flow = _flow([{"id": "m", "kind": "message", "config": {"text": "Hi {{name}}"}}], [])
        result = await _run(NodeExecutors(), flow, "m", {"name": "Ayse"})
        assert isinstance(result, Advance)
        assert result.next_node_id is None
        assert result.sends[0].text == "Hi Ayse"

    @pytest.mark.asyncio
    async def test_buttons_capped_and_truncated(self):
        buttons = [{"id": f"b{i}", "title": f"Option number {i} is long"} for i in range(5)]
        flow = _flow([{"id": "q", "kind": "question", "config": {
            "text": "Choose", "variable": "pick", "questionType": "buttons", "buttons": buttons}}], [])
        result = await _run(NodeExecutors(), flow, "q")
        assert isinstance(result, Pause)
        sent = result.sends[0]
        assert sent.type == "buttons"
        assert len(sent.payload["buttons"]) == 3
        assert all(len(b["title"]) <= 20 for b in sent.payload["buttons"])
        assert result.input_spec["input_type"] == "buttons"

    @pytest.mark.asyncio
    async def test_question_without_options_degrades_to_text(self):
        flow = _flow([{"id": "q", "kind": "question", "config": {
            "text": "Choose", "variable": "pick", "questionType": "list"}}], [])
        result = await _run(NodeExecutors(), flow, "q")
        assert result.sends[0].type == "text"

    @pytest.mark.asyncio
    async def test_text_reply_stores_variable_and_output(self):
        flow = _flow([
            {"id": "q", "kind": "question", "config": {"text": "City?", "variable": "city"}},
            {"id": "m", "kind": "message", "config": {"text": "ok"}},
        ], [("q", "m")])
        result = await _run(NodeExecutors(), flow, "q", output_name="question_1",
                            user_input=UserInput(text="Izmir"))
        assert result.next_node_id == "m"
        assert result.variables == {"city": "Izmir", "question_1": {"response": "Izmir"}}

    @pytest.mark.asyncio
    async def test_unmatched_button_reply_rerenders(self):
        flow = _flow([
            {"id": "q", "kind": "question", "config": {
                "text": "Pick", "variable": "pick", "questionType": "buttons",
                "buttons": [{"id": "a", "title": "A"}]}},
            {"id": "m", "kind": "message", "config": {"text": "ok"}},
        ], [("q", "m", "a")])
        result = await _run(NodeExecutors(), flow, "q", user_input=UserInput(text="something else"))
        assert isinstance(result, Pause)
        assert result.sends[0].type == "buttons"

    @pytest.mark.asyncio
    async def test_dynamic_list_paginates(self):
        items = [{"id": f"p{i}", "name": f"Product {i}"} for i in range(20)]
        flow = _flow([{"id": "q", "kind": "question", "config": {
            "text": "Which?", "variable": "product", "questionType": "list",
            "dynamicSource": "catalog"}}], [])
        executors = NodeExecutors()

        first = await _run(executors, flow, "q", {"catalog": items})
        rows = first.sends[0].payload["rows"]
        assert len(rows) == 9
        assert rows[-1]["id"] == f"{PAGE_NEXT}1"
        assert first.variables["catalog_page"] == 0

        second = await _run(executors, flow, "q", {"catalog": items},
                            user_input=UserInput(list_row_id=f"{PAGE_NEXT}1"))
        assert isinstance(second, Pause)
        ids = [r["id"] for r in second.sends[0].payload["rows"]]
        assert ids[0] == "p8"
        assert ids[-2].startswith("__PAGE_PREV__")
        assert second.variables["catalog_page"] == 1

    @pytest.mark.asyncio
    async def test_dynamic_selection_stores_item(self):
        items = [{"id": "p1", "name": "Tea"}, {"id": "p2", "name": "Coffee"}]
        flow = _flow([
            {"id": "q", "kind": "question", "config": {
                "text": "Which?", "variable": "product", "questionType": "list", "dynamicSource": "catalog"}},
            {"id": "m", "kind": "message", "config": {"text": "ok"}},
        ], [("q", "m")])
        result = await _run(NodeExecutors(), flow, "q", {"catalog": items},
                            user_input=UserInput(list_row_id="p2"))
        assert result.variables["product"] == "Coffee"
        assert result.variables["product_item"] == {"id": "p2", "name": "Coffee"}


class TestCondition:
    def _flow(self, edges):
        return _flow([
            {"id": "c", "kind": "condition", "config": {"variable": "age", "operator": "gte", "value": 18}},
            {"id": "adult", "kind": "message", "config": {"text": "a"}},
            {"id": "minor", "kind": "message", "config": {"text": "m"}},
        ], edges)

    @pytest.mark.asyncio
    async def test_true_and_false_branches(self):
        flow = self._flow([("c", "adult", "true"), ("c", "minor", "false")])
        assert (await _run(NodeExecutors(), flow, "c", {"age": 30})).next_node_id == "adult"
        assert (await _run(NodeExecutors(), flow, "c", {"age": 12})).next_node_id == "minor"

    @pytest.mark.asyncio
    async def test_missing_branch_fails(self):
        flow = self._flow([("c", "adult", "true"), ("c", "minor", "other")])
        result = await _run(NodeExecutors(), flow, "c", {"age": 3})
        assert isinstance(result, Fail)
        assert "'false'" in result.reason


class TestExternalCall:
    def _flow(self, **config):
        return _flow([
            {"id": "api", "kind": "external_call", "config": {"url": "https://api.test/orders/{{order_id}}", **config}},
            {"id": "ok", "kind": "message", "config": {"text": "ok"}},
            {"id": "bad", "kind": "message", "config": {"text": "bad"}},
        ], [("api", "ok", "success"), ("api", "bad", "error")])

    @pytest.mark.asyncio
    async def test_success_stores_data(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["url"] = str(request.url)
            return httpx.Response(200, json={"order": {"status": "shipped"}})

        executors = NodeExecutors(http_client=_http(handler))
        result = await _run(executors, self._flow(responsePath="order", outputVariable="order"),
                            "api", {"order_id": "42"}, output_name="rest_api_1")
        assert seen["url"] == "https://api.test/orders/42"
        assert result.next_node_id == "ok"
        assert result.variables["rest_api_1"] == {"data": {"status": "shipped"}, "error": None, "status": 200}
        assert result.variables["order"] == {"status": "shipped"}

    @pytest.mark.asyncio
    async def test_non_2xx_is_data_not_failure(self):
        executors = NodeExecutors(http_client=_http(lambda r: httpx.Response(503, json={"msg": "down"})))
        result = await _run(executors, self._flow(), "api", {"order_id": "1"}, output_name="rest_api_1")
        assert isinstance(result, Advance)
        assert result.next_node_id == "bad"
        assert result.variables["rest_api_1"]["status"] == 503
        assert result.variables["rest_api_1"]["error"] == "HTTP 503"

    @pytest.mark.asyncio
    async def test_timeout_in_milliseconds(self):
        async def slow(request: httpx.Request):
            read_timeout = request.extensions["timeout"]["read"]
            if read_timeout < 0.2:
                await asyncio.sleep(read_timeout)
                raise httpx.ReadTimeout("read timed out", request=request)
            return httpx.Response(200, json={})

        executors = NodeExecutors(http_client=_http(slow))
        result = await _run(executors, self._flow(timeout=100), "api", {"order_id": "1"}, output_name="rest_api_1")
        assert result.next_node_id == "bad"
        assert "timed out" in result.variables["rest_api_1"]["error"]
        assert result.variables["__last_api_error__"]

    @pytest.mark.asyncio
    async def test_body_template_is_json_parsed(self):
        captured = {}

        def handler(request: httpx.Request):
            captured["body"] = request.content
            return httpx.Response(201, json={"id": 7})

        executors = NodeExecutors(http_client=_http(handler))
        await _run(executors, self._flow(method="POST", body='{"phone": "{{phone}}"}'),
                   "api", {"order_id": "1", "phone": "+90555"})
        assert json.loads(captured["body"]) == {"phone": "+90555"}

    @pytest.mark.asyncio
    async def test_unsendable_url_takes_error_edge(self):
        calls = []

        def handler(request: httpx.Request):
            calls.append(request)
            return httpx.Response(200, json={})

        executors = NodeExecutors(http_client=_http(handler))
        flow = self._flow(url="https://api.test/search?q={{question_1.response}}")
        result = await _run(executors, flow, "api", {"question_1": {"response": "red\nshoes"}},
                            output_name="rest_api_1")
        assert isinstance(result, Advance)
        assert result.next_node_id == "bad"
        assert result.variables["rest_api_1"]["error"]
        assert result.variables["rest_api_1"]["status"] is None
        assert calls == []


class TestCalendarLookup:
    def _flow(self, config, owner_id="owner-1"):
        return _flow([
            {"id": "cal", "kind": "calendar_lookup", "config": config},
            {"id": "m", "kind": "message", "config": {"text": "ok"}},
        ], [("cal", "m")], owner_id=owner_id)

    @pytest.mark.asyncio
    async def test_owner_slots_skip_busy(self):
        calendar = MockCalendarProvider()
        calendar.add_event("owner-1", "2030-01-02T09:00:00", "2030-01-02T10:00:00")
        executors = NodeExecutors(calendar=calendar)
        result = await _run(executors, self._flow({
            "sourceType": "owner", "date": "2030-01-02", "workStart": "09:00", "workEnd": "11:00",
            "slotDuration": 30, "outputVariable": "slots"}), "cal", output_name="calendar_1")
        slots = result.variables["slots"]
        assert [s["start"] for s in slots] == ["10:00", "10:30"]
        assert result.variables["calendar_1"]["result"]["date"] == "2030-01-02"
        assert result.variables["calendar_1"]["error"] is None

    @pytest.mark.asyncio
    async def test_variable_source_uses_identity_lookup(self):
        calls = []

        async def lookup(phone):
            calls.append(phone)
            return "identity-9"

        calendar = MockCalendarProvider()
        calendar.add_event("identity-9", "2030-01-02T09:00:00", "2030-01-02T09:30:00")
        executors = NodeExecutors(calendar=calendar, identity_lookup=lookup)
        result = await _run(executors, self._flow({
            "sourceType": "variable", "userVariable": "{{staff_phone}}", "date": "2030-01-02",
            "workStart": "09:00", "workEnd": "10:00", "slotDuration": 30, "outputVariable": "slots"}),
            "cal", {"staff_phone": "+905551234567"})
        assert calls == ["+905551234567"]
        assert [s["start"] for s in result.variables["slots"]] == ["09:30"]

    @pytest.mark.asyncio
    async def test_unresolvable_user_is_recorded(self):
        executors = NodeExecutors(calendar=MockCalendarProvider())
        result = await _run(executors, self._flow({"sourceType": "owner"}, owner_id=""),
                            "cal", output_name="calendar_1")
        assert isinstance(result, Advance)
        assert result.next_node_id == "m"
        assert result.variables["calendar_1"]["result"] is None
        assert result.variables["calendar_1"]["error"]

    @pytest.mark.asyncio
    async def test_malformed_working_hours_are_recorded(self):
        executors = NodeExecutors(calendar=MockCalendarProvider())
        result = await _run(executors, self._flow({
            "sourceType": "owner", "date": "2030-01-02", "workStart": "9am", "workEnd": "18:00"}),
            "cal", output_name="calendar_1")
        assert isinstance(result, Advance)
        assert "9am" in result.variables["calendar_1"]["error"]

    def test_non_positive_slot_duration_is_rejected_at_parse(self):
        with pytest.raises(PydanticValidationError):
            self._flow({"sourceType": "owner", "slotDuration": -30})

    def test_build_slots_rejects_zero_duration(self):
        with pytest.raises(CalendarError):
            build_slots(date(2030, 1, 2), "09:00", "10:00", 0)


class TestRESTCalendar:
    def _provider(self, handler):
        config = CalendarConfig(provider="rest", base_url="https://calendar.test")
        return RESTCalendarProvider(config, transport=httpx.MockTransport(handler))

    @pytest.mark.asyncio
    async def test_events_become_free_slots(self):
        def handler(request: httpx.Request):
            assert request.url.path == "/users/u1/events"
            return httpx.Response(200, json={"events": [
                {"start": "2030-01-02T09:00:00", "end": "2030-01-02T09:30:00"}]})

        result = await self._provider(handler).availability("u1", date(2030, 1, 2), "09:00", "10:00", 30)
        assert [s["start"] for s in result["slots"]] == ["09:30"]

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self):
        calls = []

        def handler(request: httpx.Request):
            calls.append(request)
            return httpx.Response(404, json={"error": "unknown user"})

        with pytest.raises(CalendarError):
            await self._provider(handler).availability("ghost", date(2030, 1, 2), "09:00", "10:00", 30)
        assert len(calls) == 1

    def test_retry_policy(self):
        request = httpx.Request("GET", "https://calendar.test")

        def status_error(code):
            return httpx.HTTPStatusError("x", request=request, response=httpx.Response(code, request=request))

        assert is_retryable(httpx.ConnectError("down", request=request))
        assert is_retryable(status_error(503))
        assert is_retryable(status_error(429))
        assert not is_retryable(status_error(404))
        assert not is_retryable(ValueError("bad"))


class TestForm:
    def _flow(self):
        return _flow([
            {"id": "f", "kind": "form", "config": {
                "formId": "appointment", "body": "Book, {{name}}", "initialScreen": "SELECT_DATE",
                "initialData": {"who": "{{name}}"}, "outputVariable": "booking"}},
            {"id": "m", "kind": "message", "config": {"text": "ok"}},
        ], [("f", "m")])

    @pytest.mark.asyncio
    async def test_dispatch_pauses_with_token(self):
        result = await _run(NodeExecutors(), self._flow(), "f", {"name": "Ayse"})
        assert isinstance(result, Pause)
        msg = result.sends[0]
        assert msg.type == "form"
        assert msg.text == "Book, Ayse"
        assert msg.payload["flow_token"] == "conv-1:f"
        assert msg.payload["data"] == {"who": "Ayse"}

    @pytest.mark.asyncio
    async def test_completion_merges_fields(self):
        reply = UserInput(form_response={"date": "2030-01-02", "slot": "0930", "flow_token": "conv-1:f"},
                          flow_token="conv-1:f")
        result = await _run(NodeExecutors(), self._flow(), "f", output_name="flow_1", user_input=reply)
        assert result.next_node_id == "m"
        assert result.variables["date"] == "2030-01-02"
        assert result.variables["flow_1"] == {"response": {"date": "2030-01-02", "slot": "0930"}}
        assert result.variables["booking"]["slot"] == "0930"

    @pytest.mark.asyncio
    async def test_text_while_waiting_keeps_waiting(self):
        result = await _run(NodeExecutors(), self._flow(), "f", user_input=UserInput(text="hello?"))
        assert isinstance(result, Pause)
        assert result.sends == []

    @pytest.mark.asyncio
    async def test_foreign_token_is_ignored(self):
        reply = UserInput(form_response={"x": 1}, flow_token="other:f")
        result = await _run(NodeExecutors(), self._flow(), "f", user_input=reply)
        assert isinstance(result, Pause)


class TestFormDataExchange:
    SCREENS = {"appointment": {
        "first_screen": "SELECT_DATE",
        "screens": {
            "SELECT_DATE": {"next": "SELECT_SLOT"},
            "SELECT_SLOT": {"next": "SUCCESS", "options": {"field": "slots", "source": "calendar"}},
        },
    }}

    def test_init_uses_routing_first_screen(self):
        executors = NodeExecutors(form_screens=self.SCREENS)
        assert executors.form_init("appointment", None, {}) == {"screen": "SELECT_DATE", "data": {}}

    @pytest.mark.asyncio
    async def test_next_screen_gets_calendar_options(self):
        executors = NodeExecutors(calendar=MockCalendarProvider(), form_screens=self.SCREENS)
        out = await executors.form_data_exchange(
            "appointment", "SELECT_DATE", {"date": "2030-01-02"}, "conv-1:f", owner_id="owner-1")
        assert out["screen"] == "SELECT_SLOT"
        assert out["data"]["date"] == "2030-01-02"
        assert out["data"]["slots"][0] == {"id": "0900", "title": "09:00 - 09:30"}

    @pytest.mark.asyncio
    async def test_last_screen_returns_success(self):
        executors = NodeExecutors(form_screens=self.SCREENS)
        out = await executors.form_data_exchange("appointment", "SELECT_SLOT", {"slot": "0900"}, "conv-1:f")
        assert out["screen"] == "SUCCESS"
        assert out["data"]["extension_message_response"]["params"] == {"flow_token": "conv-1:f", "slot": "0900"}

    @pytest.mark.asyncio
    async def test_http_options(self):
        screens = {"catalog": {"screens": {
            "A": {"next": "B"},
            "B": {"options": {"field": "products", "source": "http", "url": "https://api.test/p",
                              "response_path": "items", "label_field": "name"}},
        }}}

        def handler(request):
            return httpx.Response(200, json={"items": [{"id": 1, "name": "Tea"}]})

        executors = NodeExecutors(http_client=_http(handler), form_screens=screens)
        out = await executors.form_data_exchange("catalog", "A", {}, "tok")
        assert out == {"screen": "B", "data": {"products": [{"id": "1", "title": "Tea"}]}}

