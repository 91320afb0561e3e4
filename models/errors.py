"""
Error taxonomy for the flow engine.

  ValidationError   malformed flow graph, rejected at save time
  ExecutorError     recoverable node failure, recorded into variables
  InterpreterFault  fatal for one execution, state goes to status=error
  IngestionError    bad webhook signature or malformed sub-item
  ProtocolError     encrypted form request that cannot be served
"""
from __future__ import annotations

from typing import Optional


class FlowEngineError(Exception):
    """Base for all flow engine errors."""


class ValidationError(FlowEngineError):
    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "invalid flow")


class ExecutorError(FlowEngineError):
    pass


class InterpreterFault(FlowEngineError):
    def __init__(self, message: str, node_id: Optional[str] = None):
        self.node_id = node_id
        super().__init__(message)


class IngestionError(FlowEngineError):
    pass


class ProtocolError(FlowEngineError):
    def __init__(self, message: str, http_status: int = 421):
        self.http_status = http_status
        super().__init__(message)
