"""
Flow Interpreter — walks one conversation's ExecutionState through its flow.

One step invocation:
  1. load the state (or create it at the start node)
  2. waiting_input → feed the reply into the current node; otherwise enter it
  3. while the executor says Advance, move to the target and run it in the
     same pass (conditions, HTTP calls, messages add no user-visible hops)
  4. stop on Pause (waiting_input), on a node with nothing after it
     (completed) or on Fail / step budget / missing node (error)
  5. persist, then emit the queued sends as one batch in generation order

All work for one conversation id runs under a keyed lock, so two inbound
events for the same conversation never interleave. Persisted status is
always waiting_input, completed or error; running exists only in memory.

Usage:
    interpreter = FlowInterpreter(store, registry, executors, sender)
    outcome = await interpreter.handle_inbound(conversation_id, UserInput(text="hi"),
                                               recipient="+905551234567")
"""
from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field

from channels.base import OutboundSender
from database.store_base import BaseStateStore
from flows.executors import NodeExecutors
from flows.models import Fail, FlowDefinition, NodeContext, NodeKind, Pause
from flows.naming import output_name_for
from flows.registry import FlowRegistry
from models.errors import ExecutorError, InterpreterFault
from models.schemas import (
    CompletionReason, ExecutionState, ExecutionStatus, MessageDirection,
    MessageStatus, MessageType, OutboundMessage, StoredMessage, UserInput,
)
from utils.locks import KeyedLock

logger = structlog.get_logger()

MAX_STEPS = 100  # per-invocation hop budget

Listener = Callable[[str, dict[str, Any]], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepOutcome(BaseModel):
    """What one invocation did: the persisted state plus the sends it emitted."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    state: Optional[ExecutionState] = None
    sent: list[OutboundMessage] = Field(default_factory=list)
    blocked: list[OutboundMessage] = Field(default_factory=list)   # dropped by the 24h window
    failed: list[OutboundMessage] = Field(default_factory=list)
    fault: Optional[str] = None
    skipped: bool = False                                          # nothing ran (inert or no flow)


class FlowInterpreter:
    """
    Drives ExecutionStates. It is the only component that writes them.

    Args:
        store:            state store (execution states, conversations, message log)
        registry:         flow definitions and the active flow
        executors:        per-kind node handlers
        sender:           default outbound sender (test harness passes its own per call)
        max_steps:        hop budget per invocation
        max_node_visits:  optional per-node visit limit per invocation (0 = off)
        form_timeout_min: minutes a paused form waits before the execution expires (0 = never)
        question_timeout_min: same for questions
    """

    def __init__(
        self,
        store: BaseStateStore,
        registry: FlowRegistry,
        executors: NodeExecutors,
        sender: OutboundSender,
        max_steps: int = MAX_STEPS,
        max_node_visits: int = 0,
        locks: Optional[KeyedLock] = None,
        form_timeout_min: float = 0,
        question_timeout_min: float = 0,
    ):
        self.store = store
        self.registry = registry
        self.executors = executors
        self.sender = sender
        self.max_steps = max_steps
        self.max_node_visits = max_node_visits
        self.locks = locks or KeyedLock()
        self.wait_timeouts = {
            NodeKind.FORM: form_timeout_min,
            NodeKind.QUESTION: question_timeout_min,
        }

    # ══════════════════════════════════════════════════════════
    #  PUBLIC OPERATIONS
    # ══════════════════════════════════════════════════════════

    async def handle_inbound(
        self,
        key: str,
        user_input: UserInput,
        recipient: str = "",
        initial_variables: Optional[dict[str, Any]] = None,
        flow_id: Optional[str] = None,
    ) -> StepOutcome:
        """Ingestion entry point: start a fresh execution or resume a waiting one."""
        async with self.locks.acquire(key):
            return await self.handle_inbound_locked(key, user_input, recipient, initial_variables, flow_id)

    async def handle_inbound_locked(
        self,
        key: str,
        user_input: UserInput,
        recipient: str = "",
        initial_variables: Optional[dict[str, Any]] = None,
        flow_id: Optional[str] = None,
    ) -> StepOutcome:
        """Same as handle_inbound; the caller already holds `self.locks` for `key`."""
        state = await self.store.get_state(key)

        if state is not None and state.status == ExecutionStatus.ERROR:
            logger.info("inbound_ignored_state_error", conversation_id=key, node_id=state.current_node_id)
            return StepOutcome(state=state, skipped=True)

        if state is not None and state.is_expired():
            await self._expire(state)

        if state is not None and state.status == ExecutionStatus.WAITING_INPUT:
            flow = self.registry.get(state.flow_id)
            if flow is None:
                return await self._fault_and_save(state, f"Flow '{state.flow_id}' not found")
            return await self._run(state, flow, user_input, recipient=recipient)

        flow = self.registry.get(flow_id) if flow_id else self.registry.active
        if flow is None:
            logger.info("inbound_no_active_flow", conversation_id=key)
            return StepOutcome(state=state, skipped=True)
        state = self._new_state(key, flow, initial_variables)
        return await self._run(state, flow, None, recipient=recipient)

    async def start(
        self,
        key: str,
        flow_id: str,
        variables: Optional[dict[str, Any]] = None,
        is_test_session: bool = False,
        test_metadata: Optional[dict[str, Any]] = None,
        recipient: str = "",
        sender: Optional[OutboundSender] = None,
        listener: Optional[Listener] = None,
    ) -> StepOutcome:
        """Create (or replace) the execution for `key` at the start node and run it."""
        flow = self.registry.get(flow_id)
        if flow is None:
            raise KeyError(flow_id)
        async with self.locks.acquire(key):
            state = self._new_state(key, flow, variables, is_test_session, test_metadata)
            return await self._run(state, flow, None, recipient=recipient, sender=sender, listener=listener)

    async def resume(
        self,
        key: str,
        user_input: UserInput,
        recipient: str = "",
        sender: Optional[OutboundSender] = None,
        listener: Optional[Listener] = None,
    ) -> StepOutcome:
        """Feed a reply to an execution that is waiting for one."""
        async with self.locks.acquire(key):
            state = await self.store.get_state(key)
            if state is None:
                raise KeyError(key)
            if state.status != ExecutionStatus.WAITING_INPUT:
                raise ExecutorError(f"Execution '{key}' is {state.status.value}, not waiting for input")
            flow = self.registry.get(state.flow_id)
            if flow is None:
                return await self._fault_and_save(state, f"Flow '{state.flow_id}' not found")
            return await self._run(state, flow, user_input, recipient=recipient,
                                   sender=sender, listener=listener)

    async def stop(self, key: str, reason: str = CompletionReason.USER_STOPPED.value) -> Optional[ExecutionState]:
        async with self.locks.acquire(key):
            state = await self.store.get_state(key)
            if state is None:
                return None
            self._complete(state, reason)
            await self.store.save_state(state)
            logger.info("execution_stopped", conversation_id=key, reason=reason)
            return state

    async def skip_current_node(
        self, key: str, recipient: str = "",
        sender: Optional[OutboundSender] = None, listener: Optional[Listener] = None,
    ) -> StepOutcome:
        """Move a waiting execution past its current node along the default edge."""
        async with self.locks.acquire(key):
            state = await self.store.get_state(key)
            if state is None:
                raise KeyError(key)
            if state.status != ExecutionStatus.WAITING_INPUT:
                raise ExecutorError(f"Execution '{key}' is {state.status.value}, nothing to skip")
            flow = self.registry.get(state.flow_id)
            if flow is None:
                return await self._fault_and_save(state, f"Flow '{state.flow_id}' not found")
            next_id = flow.find_next(state.current_node_id)
            logger.info("node_skipped", conversation_id=key, node_id=state.current_node_id, next_node_id=next_id)
            if next_id is None:
                self._complete(state)
                await self.store.save_state(state)
                return StepOutcome(state=state)
            state.current_node_id = next_id
            state.executed_node_ids.append(next_id)
            return await self._run(state, flow, None, recipient=recipient, sender=sender, listener=listener)

    async def reset(self, key: str) -> bool:
        """Forget the execution so the next inbound event starts a fresh one."""
        async with self.locks.acquire(key):
            removed = await self.store.delete_state(key)
            logger.info("execution_reset", conversation_id=key, removed=removed)
            return removed

    async def expire_stale(self, now: Optional[datetime] = None) -> int:
        """Complete every waiting execution whose deadline has passed. Returns how many."""
        now = now or _utcnow()
        expired = 0
        for candidate in await self.store.list_states(is_test=False):
            if not candidate.is_expired(now):
                continue
            async with self.locks.acquire(candidate.conversation_id):
                # re-read under the lock; a reply may have landed meanwhile
                state = await self.store.get_state(candidate.conversation_id)
                if state is None or not state.is_expired(now):
                    continue
                await self._expire(state)
                expired += 1
        if expired:
            logger.info("expired_executions_swept", count=expired)
        return expired

    # ══════════════════════════════════════════════════════════
    #  STEP LOOP
    # ══════════════════════════════════════════════════════════

    def _new_state(
        self, key: str, flow: FlowDefinition, variables: Optional[dict[str, Any]] = None,
        is_test_session: bool = False, test_metadata: Optional[dict[str, Any]] = None,
    ) -> ExecutionState:
        start = flow.start_node
        state = ExecutionState(
            conversation_id=key,
            flow_id=flow.id,
            current_node_id=start.id if start else None,
            variables=dict(variables or {}),
            executed_node_ids=[start.id] if start else [],
            is_test_session=is_test_session,
            test_metadata=test_metadata if is_test_session else None,
        )
        logger.info("execution_created", conversation_id=key, flow_id=flow.id, is_test=is_test_session)
        return state

    def _complete(self, state: ExecutionState, reason: str = CompletionReason.FLOW_COMPLETED.value):
        state.status = ExecutionStatus.COMPLETED
        state.completion_reason = reason
        state.completed_at = _utcnow()
        state.current_node_id = None
        state.expires_at = None

    def _wait_deadline(self, state: ExecutionState, kind: str) -> Optional[datetime]:
        minutes = self.wait_timeouts.get(kind, 0)
        if state.is_test_session or not minutes:
            return None
        return _utcnow() + timedelta(minutes=minutes)

    async def _expire(self, state: ExecutionState) -> None:
        node_id = state.current_node_id
        self._complete(state, CompletionReason.EXPIRED.value)
        await self.store.save_state(state)
        logger.info("execution_expired", conversation_id=state.conversation_id,
                    flow_id=state.flow_id, node_id=node_id)

    async def _run(
        self,
        state: ExecutionState,
        flow: FlowDefinition,
        user_input: Optional[UserInput],
        recipient: str = "",
        sender: Optional[OutboundSender] = None,
        listener: Optional[Listener] = None,
    ) -> StepOutcome:
        emit = listener or _noop
        queued: list[OutboundMessage] = []
        fault: Optional[str] = None
        state.status = ExecutionStatus.RUNNING

        try:
            await self._walk(state, flow, user_input, queued, emit)
        except InterpreterFault as e:
            fault = str(e)
            state.status = ExecutionStatus.ERROR
            state.error = fault
            logger.error("flow_interpreter_fault",
                         conversation_id=state.conversation_id,
                         flow_id=flow.id,
                         node_id=e.node_id,
                         variables=state.variables,
                         executed=state.executed_node_ids,
                         error=fault)
            await emit("error", {"message": fault, "node_id": e.node_id})

        await self.store.save_state(state)
        outcome = StepOutcome(state=state, fault=fault)
        await self._emit_sends(state, queued, outcome, recipient, sender or self.sender)

        if fault is None:
            routed = await self._route_form_send_failure(state, flow, outcome, recipient, sender, emit)
            if routed is not None:
                return routed
        if state.status == ExecutionStatus.COMPLETED:
            await emit("completed", {
                "reason": state.completion_reason,
                "summary": {
                    "messages": len(outcome.sent),
                    "nodes": len(state.executed_node_ids),
                    "variables": len(state.variables),
                },
            })
        return outcome

    async def _walk(
        self,
        state: ExecutionState,
        flow: FlowDefinition,
        user_input: Optional[UserInput],
        queued: list[OutboundMessage],
        emit: Listener,
    ) -> None:
        node = flow.get_node(state.current_node_id)
        if node is None:
            raise InterpreterFault(f"Node '{state.current_node_id}' not found in flow '{flow.id}'",
                                   node_id=state.current_node_id)
        pending = user_input
        resumed_on = node.id if user_input is not None else None
        hops = 0
        visits: Counter = Counter()

        while True:
            visits[node.id] += 1
            if self.max_node_visits and visits[node.id] > self.max_node_visits:
                raise InterpreterFault(
                    f"Node '{node.id}' visited more than {self.max_node_visits} times in one pass",
                    node_id=node.id)

            ctx = NodeContext(
                flow=flow,
                node_id=node.id,
                state_key=state.conversation_id,
                output_name=output_name_for(node.id, node.kind, state.node_outputs),
                user_input=pending,
                is_test_session=state.is_test_session,
                customer_phone=str(state.variables.get("customer_phone", "")),
            )
            if pending is None:
                await emit("node-entered", {"node_id": node.id, "kind": node.kind})

            result = await self.executors.execute(node, dict(state.variables), ctx)
            pending = None

            if result.variables:
                state.variables.update(result.variables)
                await emit("variables-updated", {"changes": result.variables, "variables": state.variables})
            queued.extend(result.sends)
            await emit("node-executed", {
                "node_id": node.id, "kind": node.kind, "result": type(result).__name__.lower(),
            })

            if isinstance(result, Fail):
                raise InterpreterFault(result.reason, node_id=node.id)

            if isinstance(result, Pause):
                state.status = ExecutionStatus.WAITING_INPUT
                state.current_node_id = node.id
                if node.id != resumed_on or state.expires_at is None:
                    # a reply that leaves us on the same node keeps the original deadline
                    state.expires_at = self._wait_deadline(state, node.kind)
                await emit("waiting-input", {"node_id": node.id, **result.input_spec})
                return

            # Advance
            if result.next_node_id is None:
                self._complete(state)
                return

            hops += 1
            if hops > self.max_steps:
                raise InterpreterFault(f"Step budget of {self.max_steps} exceeded", node_id=node.id)
            next_node = flow.get_node(result.next_node_id)
            if next_node is None:
                raise InterpreterFault(f"Node '{result.next_node_id}' not found in flow '{flow.id}'",
                                       node_id=node.id)
            state.current_node_id = next_node.id
            state.executed_node_ids.append(next_node.id)
            node = next_node

    async def _fault_and_save(self, state: ExecutionState, reason: str) -> StepOutcome:
        state.status = ExecutionStatus.ERROR
        state.error = reason
        await self.store.save_state(state)
        logger.error("flow_interpreter_fault", conversation_id=state.conversation_id,
                     flow_id=state.flow_id, node_id=state.current_node_id, error=reason)
        return StepOutcome(state=state, fault=reason)

    # ══════════════════════════════════════════════════════════
    #  OUTBOUND
    # ══════════════════════════════════════════════════════════

    async def _window_open(self, state: ExecutionState) -> bool:
        if state.is_test_session:
            return True
        conversation = await self.store.get_conversation(state.conversation_id)
        return bool(conversation and conversation.window_open_at())

    async def _emit_sends(
        self,
        state: ExecutionState,
        queued: list[OutboundMessage],
        outcome: StepOutcome,
        recipient: str,
        sender: OutboundSender,
    ) -> None:
        if not queued:
            return
        recipient = recipient or str(state.variables.get("customer_phone", ""))
        window_open = await self._window_open(state)

        for message in queued:
            if not window_open and message.type != "template":
                logger.warning("outbound_blocked_window_closed",
                               conversation_id=state.conversation_id, node_id=message.node_id)
                outcome.blocked.append(message)
                continue

            result = await sender.send(recipient, message)
            message.provider_message_id = result.provider_message_id
            if not result.ok:
                logger.error("outbound_send_failed", conversation_id=state.conversation_id,
                             node_id=message.node_id, error=result.error)
                outcome.failed.append(message)
                continue
            outcome.sent.append(message)

            if not state.is_test_session:
                await self.store.save_message(StoredMessage(
                    conversation_id=state.conversation_id,
                    provider_message_id=result.provider_message_id,
                    direction=MessageDirection.OUTBOUND,
                    type=MessageType.TEXT if message.type == "text" else MessageType.INTERACTIVE,
                    content={"type": message.type, "text": message.text, **message.payload},
                    status=MessageStatus.SENT,
                ))

    async def _route_form_send_failure(
        self,
        state: ExecutionState,
        flow: FlowDefinition,
        outcome: StepOutcome,
        recipient: str,
        sender: Optional[OutboundSender],
        emit: Listener,
    ) -> Optional[StepOutcome]:
        """A form that could not be dispatched follows its 'error' edge, or faults."""
        failed_form = next(
            (m for m in outcome.failed
             if m.type == "form" and m.node_id == state.current_node_id
             and state.status == ExecutionStatus.WAITING_INPUT),
            None,
        )
        if failed_form is None:
            return None

        error_target = flow.find_next(failed_form.node_id, "error", strict=True)
        state.variables["__last_form_error__"] = "form dispatch failed"
        if error_target is None:
            faulted = await self._fault_and_save(state, f"Form '{failed_form.node_id}' could not be sent")
            await emit("error", {"message": faulted.fault, "node_id": failed_form.node_id})
            faulted.failed = outcome.failed
            faulted.sent = outcome.sent
            return faulted

        state.current_node_id = error_target
        state.executed_node_ids.append(error_target)
        follow_up = await self._run(state, flow, None, recipient=recipient, sender=sender, listener=emit)
        follow_up.sent = outcome.sent + follow_up.sent
        follow_up.failed = outcome.failed + follow_up.failed
        follow_up.blocked = outcome.blocked + follow_up.blocked
        return follow_up


async def _noop(event: str, payload: dict[str, Any]) -> None:
    return None
