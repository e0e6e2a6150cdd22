# /flowbot/engine/variables.py

"""
Variable substitution for user-facing strings.

Tokens look like `{{name}}`. Resolution layers a set of system variables
(contact data, identifiers and values derived from the current time) under
the variables collected during the conversation, so collected values win on
a key collision. Lookup tries the exact key first and falls back to a
case-insensitive match.

Unknown tokens are left verbatim. A flow may reference a variable that has
not been collected yet, and the literal token in the outgoing text is what
makes that gap visible.

Everything here is pure: the only input from the outside world is the
`now` value carried by SystemContext.
"""

import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo

TOKEN_PATTERN = re.compile(r"\{\{([^}]+)\}\}")

DAYS_OF_WEEK = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


@dataclass
class SystemContext:
    contact_phone: Optional[str] = None
    contact_name: Optional[str] = None
    execution_id: Optional[str] = None
    flow_id: Optional[str] = None
    last_message: Optional[str] = None
    bot_name: Optional[str] = None
    timezone: str = "UTC"
    now: Optional[datetime] = None
    extra: Dict[str, str] = field(default_factory=dict)

    def current_time(self) -> datetime:
        tz = ZoneInfo(self.timezone)
        if self.now is None:
            return datetime.now(tz)
        if self.now.tzinfo is None:
            return self.now.replace(tzinfo=tz)
        return self.now.astimezone(tz)


def greeting_for(hour: int) -> str:
    if 5 <= hour < 12:
        return "Good morning"
    if 12 <= hour < 18:
        return "Good afternoon"
    return "Good evening"


def build_system_variables(context: Optional[SystemContext]) -> Dict[str, str]:
    if context is None:
        return {}

    system: Dict[str, str] = {}

    if context.contact_phone:
        for key in ("phone", "contact_phone", "contactPhone"):
            system[key] = context.contact_phone
    if context.contact_name:
        for key in ("name", "contact_name", "contactName"):
            system[key] = context.contact_name
    if context.execution_id:
        system["execution_id"] = context.execution_id
        system["executionId"] = context.execution_id
    if context.flow_id:
        system["flow_id"] = context.flow_id
        system["flowId"] = context.flow_id
    if context.last_message:
        system["last_message"] = context.last_message
    if context.bot_name:
        system["bot_name"] = context.bot_name

    now = context.current_time()
    system["date"] = system["current_date"] = now.strftime("%d/%m/%Y")
    system["time"] = system["current_time"] = now.strftime("%H:%M")
    system["current_datetime"] = now.strftime("%d/%m/%Y %H:%M")
    system["day_of_week"] = DAYS_OF_WEEK[now.weekday()]
    system["greeting"] = greeting_for(now.hour)
    system["year"] = str(now.year)
    system["month"] = f"{now.month:02d}"
    system["day"] = f"{now.day:02d}"

    system.update(context.extra)
    return system


def as_variable(value: Any) -> str:
    """Flow variables are strings; structured values are stored as JSON."""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def merge_variables(user_variables: Optional[Mapping[str, Any]], system_context: Optional[SystemContext]) -> Dict[str, str]:
    merged = build_system_variables(system_context)
    for key, value in (user_variables or {}).items():
        if value is not None:
            merged[key] = _stringify(value)
    return merged


def _lookup(name: str, variables: Mapping[str, str], lowered: Dict[str, str]) -> Optional[str]:
    if name in variables:
        return variables[name]
    return lowered.get(name.lower())


def resolve(text: Optional[str], user_variables: Optional[Mapping[str, Any]] = None,
            system_context: Optional[SystemContext] = None) -> str:
    """Substitute every known `{{token}}` in `text`; unknown tokens stay as written."""
    if not text:
        return text or ""
    if "{{" not in text:
        return text

    variables = merge_variables(user_variables, system_context)
    lowered: Dict[str, str] = {}
    # Later keys win, matching the exact-lookup precedence.
    for key, value in variables.items():
        lowered[key.lower()] = value

    def replace(match: re.Match) -> str:
        value = _lookup(match.group(1).strip(), variables, lowered)
        return match.group(0) if value is None else value

    return TOKEN_PATTERN.sub(replace, text)


def resolve_mapping(value: Any, user_variables: Optional[Mapping[str, Any]] = None,
                    system_context: Optional[SystemContext] = None) -> Any:
    """Resolve every string nested inside dicts and lists."""
    if isinstance(value, str):
        return resolve(value, user_variables, system_context)
    if isinstance(value, dict):
        return {key: resolve_mapping(item, user_variables, system_context) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_mapping(item, user_variables, system_context) for item in value]
    return value


def extract_names(text: Optional[str]) -> List[str]:
    """Token names in first-seen order, without duplicates."""
    if not text:
        return []
    seen: List[str] = []
    for match in TOKEN_PATTERN.finditer(text):
        name = match.group(1).strip()
        if name not in seen:
            seen.append(name)
    return seen


def has_variables(text: Optional[str]) -> bool:
    return bool(text) and TOKEN_PATTERN.search(text) is not None


def validate_variables(text: Optional[str], available: List[str]) -> Tuple[bool, List[str]]:
    """Return (valid, missing) for the tokens in `text` against `available` names."""
    known = {name.lower() for name in available}
    missing = [name for name in extract_names(text) if name.lower() not in known]
    return not missing, missing
