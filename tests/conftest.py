"""Shared test fixtures for the flow engine."""
from typing import Any

import pytest

from channels.base import RecordingSender
from database.store_memory import InMemoryStateStore
from flows.executors import NodeExecutors
from flows.interpreter import FlowInterpreter
from flows.registry import FlowRegistry
from tests.helpers import make_flow


@pytest.fixture
def button_flow() -> dict[str, Any]:
    """start → question(buttons A/B) → message per branch."""
    return make_flow(
        "button_choice",
        nodes=[
            {"id": "start", "kind": "start"},
            {"id": "ask", "kind": "question", "config": {
                "text": "Pick one", "variable": "choice", "questionType": "buttons",
                "buttons": [{"id": "a", "title": "A"}, {"id": "b", "title": "B"}],
            }},
            {"id": "say_a", "kind": "message", "config": {"text": "You picked {{choice}}"}},
            {"id": "say_b", "kind": "message", "config": {"text": "B it is, {{customer_name}}"}},
        ],
        edges=[("start", "ask"), ("ask", "say_a", "a"), ("ask", "say_b", "b")],
    )


@pytest.fixture
def greeting_flow() -> dict[str, Any]:
    """start → message → text question → message."""
    return make_flow(
        "greeting",
        nodes=[
            {"id": "start", "kind": "start"},
            {"id": "hello", "kind": "message", "config": {"text": "Hi {{customer_name}}!"}},
            {"id": "ask_city", "kind": "question", "config": {"text": "Your city?", "variable": "city"}},
            {"id": "bye", "kind": "message", "config": {"text": "See you in {{city}}"}},
        ],
        edges=[("start", "hello"), ("hello", "ask_city"), ("ask_city", "bye")],
    )


@pytest.fixture
def store():
    return InMemoryStateStore()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def registry(button_flow, greeting_flow):
    reg = FlowRegistry()
    reg.save(button_flow)
    reg.save(greeting_flow)
    reg.activate("button_choice")
    return reg


@pytest.fixture
def executors():
    return NodeExecutors()


@pytest.fixture
def interpreter(store, registry, executors, sender):
    return FlowInterpreter(store, registry, executors, sender)
