# /flowbot/engine/errors.py

"""
Classification of WhatsApp Cloud API failures and the engine's own
exception type.

`classify_error` maps a Meta error code (or its absence, for network
failures) to a category; `decide` turns the category and the attempt count
into a concrete instruction for the caller: retry after N ms, skip the
contact, abort and alert, or flip the contact's consent.
"""

import random
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ErrorCategory(str, Enum):
    CRITICAL = "critical"
    OPT_OUT = "opt_out"
    INVALID_RECIPIENT = "invalid_recipient"
    RATE_LIMIT = "rate_limit"
    RETRYABLE = "retryable"
    UNKNOWN = "unknown"


# Meta Cloud API error codes
CRITICAL_CODES = frozenset({
    0, 3, 10, 100, 190, 200, 368,
    131005, 131008, 131031, 131045,
    132000, 132001, 132005, 132007, 132012, 132015, 132016,
    133004,
})
OPT_OUT_CODES = frozenset({131050})
INVALID_RECIPIENT_CODES = frozenset({131009, 131021, 131026, 131052, 131053, 133010, 1013})
RATE_LIMIT_CODES = frozenset({4, 80007, 130429, 131048, 131056})
RETRYABLE_CODES = frozenset({1, 2, 131000, 131016, 133000, 133005})

BASE_BACKOFF_MS = 1000
MAX_BACKOFF_MS = 30000
RATE_LIMIT_BACKOFF_MS = 6000
MAX_RATE_LIMIT_BACKOFF_MS = 60000
JITTER_RATIO = 0.1


def classify_error(code: Optional[int], message: Optional[str] = None) -> ErrorCategory:
    if code is None:
        return ErrorCategory.RETRYABLE
    if code in OPT_OUT_CODES:
        return ErrorCategory.OPT_OUT
    if code in CRITICAL_CODES:
        return ErrorCategory.CRITICAL
    if code in INVALID_RECIPIENT_CODES:
        return ErrorCategory.INVALID_RECIPIENT
    if code in RATE_LIMIT_CODES:
        return ErrorCategory.RATE_LIMIT
    if code in RETRYABLE_CODES:
        return ErrorCategory.RETRYABLE

    text = (message or "").lower()
    if "timeout" in text or "temporar" in text:
        return ErrorCategory.RETRYABLE
    if ("opt" in text and "out" in text) or "stop" in text:
        return ErrorCategory.OPT_OUT
    return ErrorCategory.UNKNOWN


def calculate_backoff(retry_count: int, category: ErrorCategory = ErrorCategory.RETRYABLE) -> int:
    """Milliseconds to wait before attempt `retry_count + 1`."""
    if category == ErrorCategory.RATE_LIMIT:
        return min(RATE_LIMIT_BACKOFF_MS * 2 ** retry_count, MAX_RATE_LIMIT_BACKOFF_MS)
    delay = BASE_BACKOFF_MS * 2 ** retry_count
    delay += delay * JITTER_RATIO * random.uniform(-1, 1)
    return int(min(max(delay, 0), MAX_BACKOFF_MS))


@dataclass(frozen=True)
class ErrorDecision:
    category: ErrorCategory
    should_retry: bool = False
    retry_after_ms: int = 0
    skip_contact: bool = False
    abort_flow: bool = False
    mark_opted_out: bool = False
    notify_operator: bool = False


def decide(code: Optional[int], retry_count: int, max_retries: int = 3, message: Optional[str] = None) -> ErrorDecision:
    category = classify_error(code, message)

    if category == ErrorCategory.CRITICAL:
        return ErrorDecision(category, abort_flow=True, notify_operator=True)

    if category == ErrorCategory.OPT_OUT:
        return ErrorDecision(category, skip_contact=True, mark_opted_out=True)

    if category == ErrorCategory.INVALID_RECIPIENT:
        return ErrorDecision(category, skip_contact=True)

    if category in (ErrorCategory.RETRYABLE, ErrorCategory.RATE_LIMIT):
        if retry_count < max_retries:
            return ErrorDecision(category, should_retry=True, retry_after_ms=calculate_backoff(retry_count, category))
        return ErrorDecision(category, skip_contact=True)

    # Unknown codes get a single retry.
    if retry_count < min(1, max_retries):
        return ErrorDecision(category, should_retry=True, retry_after_ms=calculate_backoff(retry_count))
    return ErrorDecision(category, skip_contact=True)


class FlowEngineError(Exception):
    """Infrastructure or lookup failure raised out of the engine."""

    FLOW_NOT_FOUND = "FLOW_NOT_FOUND"
    EXECUTION_NOT_FOUND = "EXECUTION_NOT_FOUND"
    NODE_NOT_FOUND = "NODE_NOT_FOUND"
    INVALID_MODE = "INVALID_MODE"
    CREDENTIALS_MISSING = "CREDENTIALS_MISSING"
    WHATSAPP_ERROR = "WHATSAPP_ERROR"
    RATE_LIMIT = "RATE_LIMIT"
    TIMEOUT = "TIMEOUT"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    STATE_CONFLICT = "STATE_CONFLICT"
    UNKNOWN = "UNKNOWN"

    def __init__(self, error_type: str, message: str, code: Optional[int] = None, retryable: bool = False):
        super().__init__(message)
        self.error_type = error_type
        self.message = message
        self.code = code
        self.retryable = retryable

    def __str__(self) -> str:
        return f"[{self.error_type}] {self.message}"


class StateConflictError(FlowEngineError):
    """A compare-and-set write lost against a concurrent writer."""

    def __init__(self, flow_id: str, contact_id: str, expected_version: Optional[int]):
        super().__init__(
            self.STATE_CONFLICT,
            f"Conversation state for {contact_id} in flow {flow_id} changed (expected version {expected_version})",
            retryable=True,
        )
        self.flow_id = flow_id
        self.contact_id = contact_id
        self.expected_version = expected_version
