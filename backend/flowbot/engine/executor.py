# /flowbot/engine/executor.py

"""
The flow execution engine.

`FlowExecutor.run` drives one conversation forward from its persisted
pointer until it has to stop: the contact must answer, the flow ended, a
human took over, a long delay was scheduled, or something failed. Each
step is:

1. resolve the contact's reply against the node that is waiting for it;
2. execute the current node through the registry;
3. merge its output into the variables and send its messages, classifying
   and retrying transport failures;
4. decide between ending, waiting, sleeping and advancing;
5. persist the state with a compare-and-set on `version`.

Node and transport failures end the pass with `halted_error`; failures of
the state store propagate to the caller so the surrounding job can retry.
"""

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from flowbot.config.settings import Settings, WhatsAppCredentials, settings as default_settings
from flowbot.engine.errors import ErrorCategory, ErrorDecision, FlowEngineError, decide
from flowbot.engine.nodes.base import NodeExecutor
from flowbot.engine.nodes.registry import NodeExecutorRegistry
from flowbot.engine.state import StateManager
from flowbot.engine.variables import as_variable
from flowbot.models.conversation import ConversationState, ConversationStatus
from flowbot.models.execution import (
    ExecutionContext, ExecutionOutcome, ExecutionStatus, IncomingMessage, NodeExecutionResult, OutboundMessage,
)
from flowbot.models.flow import Flow, FlowMode, FlowNode
from flowbot.utils.logging import bind_execution, clear_execution
from flowbot.utils.metrics import (
    active_conversations_gauge, flow_error_counter, node_execution_counter, step_duration_histogram,
)

logger = logging.getLogger(__name__)

RESUME_JOB_KIND = "flow_resume"


@dataclass(frozen=True)
class TransportFailure:
    decision: ErrorDecision
    code: Optional[int]
    message: str


class FlowExecutor:
    def __init__(
        self,
        registry: NodeExecutorRegistry,
        state_manager: StateManager,
        sender,
        alerting=None,
        store=None,
        dispatcher=None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.registry = registry
        self.state_manager = state_manager
        self.sender = sender
        self.alerting = alerting
        self.store = store
        self.dispatcher = dispatcher
        self.settings = settings or default_settings
        self.sleep = sleep

    # ---------------- Public API ---------------- #

    async def run(
        self,
        flow: Flow,
        state: ConversationState,
        incoming_message: Optional[IncomingMessage] = None,
        credentials: Optional[WhatsAppCredentials] = None,
    ) -> ExecutionOutcome:
        credentials = credentials or self.settings.default_credentials()
        if not credentials.access_token:
            raise FlowEngineError(FlowEngineError.CREDENTIALS_MISSING, f"No WhatsApp access token for phone {credentials.phone_number_id}")

        bind_execution(state.execution_id, flow.id, state.contact_id)
        started = time.perf_counter()
        was_waiting = state.awaiting_input
        try:
            outcome = await self._run(flow, state, incoming_message, credentials)
            if was_waiting and not state.awaiting_input:
                active_conversations_gauge.dec()
            elif state.awaiting_input and not was_waiting:
                active_conversations_gauge.inc()
            logger.info(
                f"Flow {flow.id} pass for {state.contact_id} finished: {outcome.status.value} "
                f"at node {outcome.current_node_id} ({outcome.nodes_executed} nodes, {outcome.messages_sent} messages)"
            )
            return outcome
        finally:
            step_duration_histogram.labels(mode=state.mode).observe(time.perf_counter() - started)
            clear_execution()

    # ---------------- Step loop ---------------- #

    async def _run(self, flow: Flow, state: ConversationState, message: Optional[IncomingMessage],
                   credentials: WhatsAppCredentials) -> ExecutionOutcome:
        graph = flow.graph
        outcome = ExecutionOutcome(status=ExecutionStatus.ADVANCED, state=state)
        last_message = message.text if message else None

        if state.status == ConversationStatus.ENDED:
            outcome.status = ExecutionStatus.ENDED
            return outcome
        if state.status == ConversationStatus.PAUSED:
            outcome.status = ExecutionStatus.PAUSED
            return outcome

        if message and message.text:
            state.remember("user", message.text, self.settings.conversation_history_limit)

        node_id = state.current_node_id
        if node_id is None:
            start = graph.start_node()
            if start is None:
                return await self._halt(state, outcome, None, "Flow has no start node")
            node_id = start.id

        if state.awaiting_input and message is not None:
            node = graph.get_node(node_id)
            if node is None:
                return await self._halt(state, outcome, node_id, f"Node '{node_id}' no longer exists in flow {flow.id}")
            executor = self.registry.get(node.type)
            if executor is None:
                return await self._halt(state, outcome, node_id, f"Unknown node type '{node.type}'")

            if node.type != "input":
                context = self._context(flow, state, node_id, message, last_message, credentials)
                try:
                    next_id = executor.process_response(context, node)
                except Exception as e:
                    logger.error(f"process_response crashed on node {node_id} ({node.type}): {e}", exc_info=True)
                    return await self._halt(state, outcome, node_id, f"Reply handling failed: {e}")

                if next_id is None:
                    logger.info(f"Reply from {state.contact_id} did not match node {node_id}; staying")
                    outcome.status = ExecutionStatus.NO_MATCH
                    outcome.current_node_id = node_id
                    await self._persist(state)
                    return outcome

                if state.collect_input and state.collect_input.variable_name:
                    state.variables[state.collect_input.variable_name] = message.text or message.reply_id or ""
                state.awaiting_input = False
                state.collect_input = None
                state.previous_node_id = node_id
                state.current_node_id = next_id
                node_id = next_id
                message = None

        visits: Counter = Counter()
        while node_id:
            if outcome.nodes_executed >= self.settings.max_nodes_per_execution:
                return await self._halt(state, outcome, node_id,
                                        f"Execution stopped after {self.settings.max_nodes_per_execution} nodes in one pass")
            visits[node_id] += 1
            if visits[node_id] > self.settings.max_node_visits:
                return await self._halt(state, outcome, node_id,
                                        f"Infinite loop: node '{node_id}' visited more than {self.settings.max_node_visits} times")

            node = graph.get_node(node_id)
            if node is None:
                return await self._halt(state, outcome, node_id, f"Node '{node_id}' does not exist in flow {flow.id}")
            executor = self.registry.get(node.type)
            if executor is None:
                return await self._halt(state, outcome, node_id, f"Unknown node type '{node.type}'")

            context = self._context(flow, state, node_id, message, last_message, credentials)
            step_started = time.perf_counter()
            try:
                result = await executor.execute(context, node)
            except FlowEngineError:
                raise
            except Exception as e:
                logger.error(f"Node {node_id} ({node.type}) crashed: {e}", exc_info=True)
                result = NodeExecutionResult.failure(f"Unexpected error: {e}", error_code="NODE_CRASH")
            outcome.nodes_executed += 1
            outcome.current_node_id = node_id
            node_execution_counter.labels(node_type=node.type, status="success" if result.success else "failed").inc()
            await self._log_node(state, node, result, time.perf_counter() - step_started)

            if not result.success:
                return await self._halt(state, outcome, node_id, result.error or "Node execution failed", category="node_config")

            for name, value in result.output.items():
                state.variables[name] = as_variable(value)

            for outbound in result.messages:
                failure = await self._send(state, outbound, credentials)
                if failure is not None:
                    return await self._transport_failure(state, outcome, node_id, failure)
                outcome.messages_sent += 1
                if outbound.type == "text":
                    state.remember("assistant", outbound.payload.get("text", {}).get("body", ""), self.settings.conversation_history_limit)

            if result.end_conversation:
                return await self._finish(state, outcome, node_id, ConversationStatus.ENDED, ExecutionStatus.ENDED)
            if result.handoff:
                logger.info(f"Conversation with {state.contact_id} handed off to a human at node {node_id}")
                return await self._finish(state, outcome, node_id, ConversationStatus.PAUSED, ExecutionStatus.PAUSED)

            if self._waits(executor, node, result, context):
                state.current_node_id = node_id
                state.awaiting_input = True
                state.collect_input = result.collect_input
                outcome.status = ExecutionStatus.AWAITING_INPUT
                await self._persist(state)
                return outcome

            next_id = self._next_node(flow, node, result)

            if result.delay_ms:
                delay = result.delay_ms / 1000
                inline = (
                    state.mode == FlowMode.CAMPAIGN.value
                    or self.dispatcher is None
                    or delay <= self.settings.max_inline_delay_seconds
                )
                if inline:
                    await self.sleep(delay)
                elif next_id is not None:
                    return await self._schedule_resume(flow, state, outcome, node_id, next_id, delay, credentials)

            if next_id is None:
                return await self._finish(state, outcome, node_id, ConversationStatus.ENDED, ExecutionStatus.ENDED)

            state.previous_node_id = node_id
            state.current_node_id = next_id
            state.awaiting_input = False
            state.collect_input = None
            await self._persist(state)
            node_id = next_id
            message = None

        return await self._finish(state, outcome, outcome.current_node_id, ConversationStatus.ENDED, ExecutionStatus.ENDED)

    # ---------------- Helpers ---------------- #

    def _context(self, flow: Flow, state: ConversationState, node_id: str, message: Optional[IncomingMessage],
                 last_message: Optional[str], credentials: WhatsAppCredentials) -> ExecutionContext:
        def set_variable(name: str, value: str):
            state.variables[name] = as_variable(value)

        def log(text: str):
            logger.info(f"[{flow.id}/{node_id}] {text}")

        return ExecutionContext(
            execution_id=state.execution_id,
            flow_id=flow.id,
            mode=state.mode,
            contact_phone=state.contact_id,
            contact_name=state.contact_name,
            graph=flow.graph,
            current_node_id=node_id,
            previous_node_id=state.previous_node_id,
            variables=state.variables,
            credentials=credentials,
            incoming_message=message,
            last_message=last_message,
            conversation_history=[entry.model_dump() for entry in state.conversation_history],
            set_variable=set_variable,
            log=log,
        )

    @staticmethod
    def _waits(executor: NodeExecutor, node: FlowNode, result: NodeExecutionResult, context: ExecutionContext) -> bool:
        if result.collect_input is not None or result.pause_execution:
            return True
        # A pausing node that ran without a reply has just asked its question.
        return executor.pauses and context.incoming_message is None and not result.output

    @staticmethod
    def _next_node(flow: Flow, node: FlowNode, result: NodeExecutionResult) -> Optional[str]:
        if result.routed or result.next_node_id:
            return result.next_node_id
        graph = flow.graph
        return graph.target_of(graph.default_edge(node.id)) or graph.target_of(graph.fallback_edge(node.id))

    async def _persist(self, state: ConversationState):
        await self.state_manager.set(state.flow_id, state.contact_id, state, expected_version=state.version)

    async def _finish(self, state: ConversationState, outcome: ExecutionOutcome, node_id: Optional[str],
                      status: ConversationStatus, outcome_status: ExecutionStatus) -> ExecutionOutcome:
        state.status = status
        state.current_node_id = node_id
        state.awaiting_input = False
        state.collect_input = None
        outcome.status = outcome_status
        outcome.current_node_id = node_id
        await self._persist(state)
        return outcome

    async def _halt(self, state: ConversationState, outcome: ExecutionOutcome, node_id: Optional[str],
                    error: str, category: str = "runtime") -> ExecutionOutcome:
        logger.error(f"Flow {state.flow_id} halted for {state.contact_id} at node {node_id}: {error}")
        flow_error_counter.labels(category=category).inc()
        outcome.error = error
        outcome.error_category = category
        await self._finish(state, outcome, node_id, ConversationStatus.ENDED, ExecutionStatus.HALTED_ERROR)
        return outcome

    async def _send(self, state: ConversationState, message: OutboundMessage,
                    credentials: WhatsAppCredentials) -> Optional[TransportFailure]:
        """Send one message, retrying in place. None on success."""
        retry_count = 0
        while True:
            result = await self.sender.send(state.contact_id, message, credentials)
            if result.success:
                return None
            decision = decide(result.error_code, retry_count, self.settings.max_send_retries, result.error_message)
            flow_error_counter.labels(category=decision.category.value).inc()
            if not decision.should_retry:
                return TransportFailure(decision, result.error_code, result.error_message or "no error details")
            retry_count += 1
            logger.warning(
                f"Send to {state.contact_id} failed ({decision.category.value}, code {result.error_code}); "
                f"retry {retry_count}/{self.settings.max_send_retries} in {decision.retry_after_ms} ms"
            )
            await self.sleep(decision.retry_after_ms / 1000)

    async def _transport_failure(self, state: ConversationState, outcome: ExecutionOutcome, node_id: str,
                                 failure: TransportFailure) -> ExecutionOutcome:
        decision = failure.decision
        error = f"WhatsApp send failed ({failure.code}): {failure.message}"
        outcome.error = error
        outcome.error_category = decision.category.value

        if decision.notify_operator and self.alerting is not None:
            await self.alerting.send_critical_alert(
                "Flow halted by a critical WhatsApp error",
                {"flow_id": state.flow_id, "contact": state.contact_id, "node_id": node_id, "code": failure.code, "error": failure.message},
            )

        if decision.mark_opted_out:
            if self.store is not None:
                await self.store.mark_contact_opted_out(state.contact_id)
            outcome.skip_reason = "opted_out"
            return await self._finish(state, outcome, node_id, ConversationStatus.ENDED, ExecutionStatus.ENDED)

        if decision.category == ErrorCategory.INVALID_RECIPIENT:
            outcome.skip_reason = "invalid_recipient"
            return await self._finish(state, outcome, node_id, ConversationStatus.ENDED, ExecutionStatus.ENDED)

        logger.error(f"Flow {state.flow_id} halted for {state.contact_id} at node {node_id}: {error}")
        await self._finish(state, outcome, node_id, ConversationStatus.ENDED, ExecutionStatus.HALTED_ERROR)
        return outcome

    async def _schedule_resume(self, flow: Flow, state: ConversationState, outcome: ExecutionOutcome, node_id: str,
                               next_id: str, delay: float, credentials: WhatsAppCredentials) -> ExecutionOutcome:
        state.previous_node_id = node_id
        state.current_node_id = next_id
        state.awaiting_input = False
        state.collect_input = None
        await self._persist(state)
        await self.dispatcher.enqueue(
            {
                "kind": RESUME_JOB_KIND,
                "flow_id": flow.id,
                "contact_id": state.contact_id,
                "execution_id": state.execution_id,
                "node_id": next_id,
                "phone_number_id": credentials.phone_number_id,
            },
            not_before=datetime.now(timezone.utc) + timedelta(seconds=delay),
        )
        logger.info(f"Flow {flow.id} for {state.contact_id} resumes at {next_id} in {delay:.0f}s")
        outcome.status = ExecutionStatus.SCHEDULED
        outcome.current_node_id = next_id
        return outcome

    async def _log_node(self, state: ConversationState, node: FlowNode, result: NodeExecutionResult, duration: float):
        if self.store is None:
            return
        await self.store.log_node_execution({
            "execution_id": state.execution_id,
            "flow_id": state.flow_id,
            "contact_id": state.contact_id,
            "mode": state.mode,
            "node_id": node.id,
            "node_type": node.type,
            "success": result.success,
            "error": result.error,
            "messages": len(result.messages),
            "duration_ms": round(duration * 1000, 2),
        })
