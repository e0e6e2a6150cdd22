# /flowbot/engine/nodes/input.py

import re
from datetime import date
from typing import Callable, Dict, List, Optional, Tuple

from flowbot.config.settings import settings
from flowbot.engine.nodes.base import NodeExecutor, coalesce, render, text_message, validation_result
from flowbot.models.conversation import CollectInput
from flowbot.models.execution import ExecutionContext, NodeExecutionResult, NodeValidation
from flowbot.models.flow import FlowEdge, FlowGraph, FlowNode

VARIABLE_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
DATE_PATTERNS = (
    (re.compile(r"^(\d{2})/(\d{2})/(\d{4})$"), (3, 2, 1)),
    (re.compile(r"^(\d{2})-(\d{2})-(\d{4})$"), (3, 2, 1)),
    (re.compile(r"^(\d{4})-(\d{2})-(\d{2})$"), (1, 2, 3)),
)

# (valid, normalized value or error message)
InputCheck = Tuple[bool, str]


def check_text(value: str, **_) -> InputCheck:
    value = value.strip()
    if not value:
        return False, "Please enter a value."
    return True, value


def check_email(value: str, **_) -> InputCheck:
    value = value.strip().lower()
    if not EMAIL_PATTERN.match(value):
        return False, "Please enter a valid e-mail address (e.g. name@example.com)."
    return True, value


def check_phone(value: str, country_code: Optional[str] = None, **_) -> InputCheck:
    digits = re.sub(r"\D", "", value)
    if not 10 <= len(digits) <= 15:
        return False, "Please enter a valid phone number including the area code."
    if len(digits) in (10, 11) and country_code:
        digits = f"{country_code}{digits}"
    return True, digits


def check_number(value: str, **_) -> InputCheck:
    try:
        number = float(value.strip().replace(",", "."))
    except ValueError:
        return False, "Please enter a valid number."
    if number != number or number in (float("inf"), float("-inf")):
        return False, "Please enter a valid number."
    return True, str(int(number)) if number.is_integer() else str(number)


def check_date(value: str, **_) -> InputCheck:
    value = value.strip()
    for pattern, (year_group, month_group, day_group) in DATE_PATTERNS:
        match = pattern.match(value)
        if not match:
            continue
        try:
            parsed = date(int(match.group(year_group)), int(match.group(month_group)), int(match.group(day_group)))
        except ValueError:
            break
        return True, parsed.isoformat()
    return False, "Please enter a valid date (e.g. 25/12/2024)."


VALIDATORS: Dict[str, Callable[..., InputCheck]] = {
    "text": check_text,
    "email": check_email,
    "phone": check_phone,
    "number": check_number,
    "date": check_date,
}


def validate_input(value: str, validation_type: str = "text", pattern: Optional[str] = None,
                   error_message: Optional[str] = None, country_code: Optional[str] = None) -> InputCheck:
    """Validate and normalize a contact's reply for an input node."""
    if validation_type in ("custom", "regex") and pattern:
        value = value.strip()
        try:
            if not re.search(pattern, value):
                return False, error_message or "The value does not match the expected format."
        except re.error:
            # A broken pattern is reported at publish time; accept the value here.
            return True, value
        return True, value

    validator = VALIDATORS.get(validation_type, check_text)
    valid, result = validator(value, country_code=country_code)
    if not valid and error_message:
        return False, error_message
    return valid, result


class InputNode(NodeExecutor):
    """
    Collects a value from the contact into a variable.

    Without a reply the prompt is sent and the node waits. With a reply the
    value is validated: an invalid one re-sends the error and the prompt and
    keeps waiting, a valid one is stored and the flow moves on.
    """

    node_type = "input"
    pauses = True

    @staticmethod
    def _settings(node: FlowNode):
        data = node.data
        return (
            coalesce(data, "prompt", "text", "question"),
            coalesce(data, "variableName", "variable_name", "variable"),
            coalesce(data, "validation", "validationType", "validation_type", default="text"),
        )

    async def execute(self, context: ExecutionContext, node: FlowNode) -> NodeExecutionResult:
        prompt, variable_name, validation_type = self._settings(node)
        if not prompt:
            return NodeExecutionResult.failure("Input node has no prompt configured")
        if not variable_name:
            return NodeExecutionResult.failure("Input node has no variable name configured")

        collect = CollectInput(variable_name=variable_name, validation_type=validation_type)
        rendered_prompt = render(context, prompt)

        reply = context.reply_text
        if not reply:
            return NodeExecutionResult(messages=[text_message(rendered_prompt)], collect_input=collect)

        valid, value = validate_input(
            reply,
            validation_type,
            pattern=coalesce(node.data, "validationRegex", "regex", "pattern"),
            error_message=coalesce(node.data, "errorMessage", "error_message"),
            country_code=coalesce(node.data, "countryCode", default=settings.default_country_code),
        )
        if not valid:
            return NodeExecutionResult(messages=[text_message(f"{value}\n\n{rendered_prompt}")], collect_input=collect)

        return NodeExecutionResult(output={variable_name: value}, next_node_id=self.default_target(context, node))

    def validate(self, node: FlowNode, edges: List[FlowEdge], graph: Optional[FlowGraph] = None) -> NodeValidation:
        errors, warnings = [], []
        prompt, variable_name, validation_type = self._settings(node)
        if not prompt:
            errors.append("Input prompt is required")
        if not variable_name:
            errors.append("Input variable name is required")
        elif not VARIABLE_NAME_PATTERN.match(variable_name):
            errors.append(f"Variable name '{variable_name}' must start with a letter or underscore and contain only letters, digits and underscores")

        if validation_type in ("custom", "regex"):
            pattern = coalesce(node.data, "validationRegex", "regex", "pattern")
            if not pattern:
                errors.append("Custom validation needs a regular expression")
            else:
                try:
                    re.compile(pattern)
                except re.error as e:
                    errors.append(f"Invalid validation regex: {e}")
        elif validation_type not in VALIDATORS:
            errors.append(f"Unknown validation type '{validation_type}'")

        if not edges:
            warnings.append("Input node has no outgoing connection; the collected value will not be used")
        return validation_result(errors, warnings)
