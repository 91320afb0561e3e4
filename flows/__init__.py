"""
Flow engine — node graph models and the interpreter that walks them.

  models       FlowDefinition, node kinds, executor results
  resolver     {{path}} template substitution
  naming       auto-generated output variable names (question_1, rest_api_2, ...)
  validation   save-time graph checks
  registry     saved flows and the active flow
  executors    one handler per node kind
  interpreter  per-conversation state machine
  expiry       background sweep of overdue waiting executions
"""
from flows.models import (
    FlowDefinition, FlowEdge, FlowNode, NodeKind,
    Advance, Pause, Fail, NodeContext,
)
from flows.resolver import resolve
from flows.registry import FlowRegistry
from flows.executors import NodeExecutors
from flows.interpreter import FlowInterpreter, StepOutcome

__all__ = [
    "FlowDefinition", "FlowEdge", "FlowNode", "NodeKind",
    "Advance", "Pause", "Fail", "NodeContext",
    "resolve", "FlowRegistry", "NodeExecutors",
    "FlowInterpreter", "StepOutcome",
]
