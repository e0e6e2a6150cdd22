# /flowbot/engine/nodes/control.py

import re
from typing import Any, Callable, Dict, List, Optional

from flowbot.engine.nodes.base import NodeExecutor, coalesce, render, text_message, validation_result
from flowbot.engine.variables import TOKEN_PATTERN
from flowbot.models.execution import ExecutionContext, NodeExecutionResult, NodeValidation
from flowbot.models.flow import FlowEdge, FlowGraph, FlowNode

TRIGGER_TYPES = {"any_message", "keyword", "exact", "starts_with", "contains", "regex"}
TRUE_HANDLES = ("true", "yes", "sim")
FALSE_HANDLES = ("false", "no", "nao")
ELSE_HANDLE = "else"
TRUTHY_VALUES = {"true", "1", "yes", "sim", "y"}
MIN_DELAY_SECONDS = 1
MAX_DELAY_SECONDS = 86400
DEFAULT_DELAY_SECONDS = 5


class StartNode(NodeExecutor):
    node_type = "start"

    async def execute(self, context: ExecutionContext, node: FlowNode) -> NodeExecutionResult:
        return NodeExecutionResult()

    def validate(self, node: FlowNode, edges: List[FlowEdge], graph: Optional[FlowGraph] = None) -> NodeValidation:
        errors, warnings = [], []
        if not edges:
            errors.append("Start node must be connected to another node")
        if graph is not None and graph.incoming(node.id):
            warnings.append("Start node has incoming connections; re-entering the start is usually a mistake")

        trigger = node.data.get("trigger")
        if isinstance(trigger, dict):
            trigger_type = trigger.get("type", "any_message")
            if trigger_type not in TRIGGER_TYPES:
                errors.append(f"Unknown trigger type '{trigger_type}'")
            if trigger_type == "regex":
                try:
                    re.compile(trigger.get("pattern") or trigger.get("value") or "")
                except re.error as e:
                    errors.append(f"Invalid trigger regex: {e}")
            if trigger_type in ("keyword", "exact", "starts_with", "contains") and not (trigger.get("keywords") or trigger.get("value")):
                errors.append(f"Trigger '{trigger_type}' needs at least one keyword")
        return validation_result(errors, warnings)


class EndNode(NodeExecutor):
    node_type = "end"

    async def execute(self, context: ExecutionContext, node: FlowNode) -> NodeExecutionResult:
        text = coalesce(node.data, "message", "text")
        messages = [text_message(render(context, text))] if text else []
        return NodeExecutionResult(messages=messages, end_conversation=True)

    def validate(self, node: FlowNode, edges: List[FlowEdge], graph: Optional[FlowGraph] = None) -> NodeValidation:
        if edges:
            return validation_result(warnings=["End node has outgoing connections that will never be followed"])
        return validation_result()


# --- Conditions ---

def _number(value: Optional[str]) -> Optional[float]:
    try:
        return float(str(value).replace(",", "."))
    except (TypeError, ValueError):
        return None


def _greater(left: Optional[str], right: Optional[str]) -> bool:
    left_number, right_number = _number(left), _number(right)
    return left_number is not None and right_number is not None and left_number > right_number


def _less(left: Optional[str], right: Optional[str]) -> bool:
    left_number, right_number = _number(left), _number(right)
    return left_number is not None and right_number is not None and left_number < right_number


OPERATORS: Dict[str, Callable[[Optional[str], Optional[str]], bool]] = {
    "equals": lambda left, right: left is not None and right is not None and left.lower() == right.lower(),
    "not_equals": lambda left, right: left is None or right is None or left.lower() != right.lower(),
    "contains": lambda left, right: left is not None and right is not None and right.lower() in left.lower(),
    "not_contains": lambda left, right: left is None or right is None or right.lower() not in left.lower(),
    "starts_with": lambda left, right: left is not None and right is not None and left.lower().startswith(right.lower()),
    "ends_with": lambda left, right: left is not None and right is not None and left.lower().endswith(right.lower()),
    "greater": _greater,
    "less": _less,
    "exists": lambda left, right: left is not None and left != "",
    "not_exists": lambda left, right: left is None or left == "",
}
OPERATOR_ALIASES = {"greater_than": "greater", "less_than": "less", "is_set": "exists", "is_empty": "not_exists"}
VALUELESS_OPERATORS = {"exists", "not_exists"}


def evaluate_condition(operator: str, left: Optional[str], right: Optional[str] = None) -> bool:
    evaluator = OPERATORS.get(OPERATOR_ALIASES.get(operator, operator))
    if evaluator is None:
        return False
    return evaluator(left, right)


def _variable_value(context: ExecutionContext, name: str) -> Optional[str]:
    name = name.strip()
    if name.startswith("{{") and name.endswith("}}"):
        name = name[2:-2].strip()
    value = render(context, "{{" + name + "}}")
    return None if TOKEN_PATTERN.fullmatch(value) else value


class ConditionNode(NodeExecutor):
    """
    Branches on a variable. A single comparison routes through the
    `true`/`false` handles (also `yes`/`no`, `sim`/`nao`), falling back to an
    unlabelled edge. A `conditions` list is evaluated in order, each entry
    routing through its own id handle, with `else` as the last resort.
    """

    node_type = "condition"

    @staticmethod
    def _single(data: Dict[str, Any]):
        return (
            coalesce(data, "variable", "variableName", "field"),
            coalesce(data, "operator", default="equals"),
            coalesce(data, "value", "compareValue"),
        )

    def _unlabelled_target(self, context: ExecutionContext, node: FlowNode) -> Optional[str]:
        for edge in context.graph.outgoing(node.id):
            if edge.source_handle is None:
                return edge.target
        return None

    async def execute(self, context: ExecutionContext, node: FlowNode) -> NodeExecutionResult:
        conditions = coalesce(node.data, "conditions")
        if conditions:
            for position, condition in enumerate(conditions):
                variable, operator, expected = self._single(condition)
                if not variable:
                    continue
                expected = render(context, expected) if expected is not None else None
                if evaluate_condition(operator, _variable_value(context, variable), expected):
                    handle = str(condition.get("id") or f"condition-{position}")
                    target = self.handle_target(context, node, [handle])
                    return NodeExecutionResult(next_node_id=target, routed=True, output={"condition_result": handle})
            target = self.handle_target(context, node, [ELSE_HANDLE]) or self._unlabelled_target(context, node)
            return NodeExecutionResult(next_node_id=target, routed=True, output={"condition_result": ELSE_HANDLE})

        variable, operator, expected = self._single(node.data)
        if not variable:
            return NodeExecutionResult.failure("Condition node has no variable configured")
        if OPERATOR_ALIASES.get(operator, operator) not in OPERATORS:
            return NodeExecutionResult.failure(f"Unknown condition operator '{operator}'")

        expected = render(context, expected) if expected is not None else None
        result = evaluate_condition(operator, _variable_value(context, variable), expected)
        handles = TRUE_HANDLES if result else FALSE_HANDLES
        target = self.handle_target(context, node, handles) or self._unlabelled_target(context, node)
        return NodeExecutionResult(next_node_id=target, routed=True, output={"condition_result": "true" if result else "false"})

    def validate(self, node: FlowNode, edges: List[FlowEdge], graph: Optional[FlowGraph] = None) -> NodeValidation:
        errors, warnings = [], []
        if not edges:
            errors.append("Condition node needs at least one outgoing connection")

        conditions = coalesce(node.data, "conditions")
        entries = conditions if conditions else [node.data]
        for position, condition in enumerate(entries, start=1):
            variable, operator, expected = self._single(condition)
            prefix = f"Condition {position}: " if conditions else ""
            if not variable:
                errors.append(f"{prefix}a variable is required")
            canonical = OPERATOR_ALIASES.get(operator, operator)
            if canonical not in OPERATORS:
                errors.append(f"{prefix}unknown operator '{operator}'")
            elif canonical not in VALUELESS_OPERATORS and expected in (None, ""):
                errors.append(f"{prefix}operator '{operator}' needs a comparison value")

        handles = {edge.source_handle for edge in edges}
        if not conditions and edges:
            has_true = any(handle in handles for handle in TRUE_HANDLES)
            has_false = any(handle in handles for handle in FALSE_HANDLES)
            if has_true != has_false and None not in handles:
                warnings.append("Only one branch of the condition is connected")
        return validation_result(errors, warnings)


# --- Flow control ---

class DelayNode(NodeExecutor):
    node_type = "delay"

    @staticmethod
    def _seconds(data: Dict[str, Any]) -> Any:
        return coalesce(data, "delaySeconds", "delay_seconds", "seconds", default=DEFAULT_DELAY_SECONDS)

    async def execute(self, context: ExecutionContext, node: FlowNode) -> NodeExecutionResult:
        seconds = _number(self._seconds(node.data))
        if seconds is None:
            return NodeExecutionResult.failure("Delay must be a number of seconds")
        seconds = min(max(seconds, MIN_DELAY_SECONDS), MAX_DELAY_SECONDS)
        return NodeExecutionResult(delay_ms=int(seconds * 1000))

    def validate(self, node: FlowNode, edges: List[FlowEdge], graph: Optional[FlowGraph] = None) -> NodeValidation:
        errors = []
        seconds = _number(self._seconds(node.data))
        if seconds is None or not MIN_DELAY_SECONDS <= seconds <= MAX_DELAY_SECONDS:
            errors.append(f"Delay must be between {MIN_DELAY_SECONDS} and {MAX_DELAY_SECONDS} seconds")
        if not edges:
            errors.append("Delay node must be connected to a next node")
        return validation_result(errors)


class JumpNode(NodeExecutor):
    """Jumps to another node without an edge, optionally gated on a variable."""

    node_type = "jump"

    @staticmethod
    def target_id(node: FlowNode) -> Optional[str]:
        return coalesce(node.data, "targetNodeId", "target_node_id", "target")

    async def execute(self, context: ExecutionContext, node: FlowNode) -> NodeExecutionResult:
        target = self.target_id(node)
        if not target or target not in context.graph:
            return NodeExecutionResult.failure(f"Jump target '{target}' does not exist")

        condition_variable = coalesce(node.data, "conditionVariable", "condition_variable")
        if condition_variable:
            value = (_variable_value(context, condition_variable) or "").strip().lower()
            if value not in TRUTHY_VALUES:
                fallback = self.fallback_target(context, node) or self.default_target(context, node)
                return NodeExecutionResult(next_node_id=fallback, routed=True)
        return NodeExecutionResult(next_node_id=target, routed=True)

    def validate(self, node: FlowNode, edges: List[FlowEdge], graph: Optional[FlowGraph] = None) -> NodeValidation:
        target = self.target_id(node)
        if not target:
            return validation_result(["Jump node needs a target node"])
        if target == node.id:
            return validation_result(["Jump node cannot target itself"])
        if graph is not None and target not in graph:
            return validation_result([f"Jump target '{target}' does not exist"])
        return validation_result()


class HandoffNode(NodeExecutor):
    """Hands the conversation to a human operator."""

    node_type = "handoff"

    @staticmethod
    def _pauses_bot(node: FlowNode) -> bool:
        return bool(node.data.get("pauseBot", node.data.get("pause_bot", True)))

    def waits_for_reply(self, node: FlowNode) -> bool:
        return self._pauses_bot(node)

    async def execute(self, context: ExecutionContext, node: FlowNode) -> NodeExecutionResult:
        text = coalesce(node.data, "message", "text")
        messages = [text_message(render(context, text))] if text else []
        output = {"handoff_reason": render(context, coalesce(node.data, "reason", default="requested"))}
        if not self._pauses_bot(node):
            return NodeExecutionResult(messages=messages, output=output)
        return NodeExecutionResult(messages=messages, handoff=True, pause_execution=True, output=output)

    def validate(self, node: FlowNode, edges: List[FlowEdge], graph: Optional[FlowGraph] = None) -> NodeValidation:
        if not coalesce(node.data, "message", "text"):
            return validation_result(warnings=["Handoff has no message; the contact will not be told a human is coming"])
        return validation_result()
