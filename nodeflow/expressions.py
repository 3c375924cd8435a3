"""Field resolution, templating and the condition expression mini-language.

Everything in here works on plain nested ``dict`` documents (the instance
context). Paths are dot separated and may carry a ``$.`` prefix, e.g.
``$.trigger.officer.id``. List elements are addressed by integer segments.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, TYPE_CHECKING

from .models import utcnow

if TYPE_CHECKING:  # pragma: no cover
    from .collaborators import SettingsLookup

logger = logging.getLogger(__name__)


class _Missing:
    def __repr__(self) -> str:  # pragma: no cover
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()

_TEMPLATE = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
_DURATION = re.compile(r"^(\d+)([dhm])$", re.IGNORECASE)

# checked in this order; the first operator present splits the expression
EXPRESSION_OPERATORS = (">=", "<=", "!=", "==", ">", "<")

VALUE_DESCRIPTOR_TYPES = ("fixed", "context", "app_setting", "entity_field")


def strip_path(path: str) -> str:
    path = path.strip()
    if path.startswith("$."):
        return path[2:]
    if path == "$":
        return ""
    return path


def lookup(data: Any, path: str) -> Any:
    """Return the value at ``path`` or ``MISSING`` when any segment is absent."""
    path = strip_path(path)
    if path == "":
        return data
    current = data
    for segment in path.split("."):
        if isinstance(current, dict):
            if segment not in current:
                return MISSING
            current = current[segment]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(segment)]
            except (ValueError, IndexError):
                return MISSING
        elif current is not None and hasattr(current, segment):
            current = getattr(current, segment)
        else:
            return MISSING
    return current


def resolve_path(data: Any, path: str, default: Any = None) -> Any:
    value = lookup(data, path)
    return default if value is MISSING else value


def set_path(data: dict[str, Any], path: str, value: Any) -> None:
    """Assign ``value`` at ``path``, creating intermediate dicts as needed."""
    segments = strip_path(path).split(".")
    current = data
    for segment in segments[:-1]:
        nxt = current.get(segment)
        if not isinstance(nxt, dict):
            nxt = {}
            current[segment] = nxt
        current = nxt
    current[segments[-1]] = value


# ----------------------------------------------------------------------
# Value helpers
def is_numeric(value: Any) -> bool:
    if isinstance(value, bool) or value is None:
        return False
    if isinstance(value, (int, float)):
        return True
    if isinstance(value, str):
        try:
            float(value.strip())
        except ValueError:
            return False
        return bool(value.strip())
    return False


def to_number(value: Any) -> float:
    return float(value.strip()) if isinstance(value, str) else float(value)


def is_truthy(value: Any) -> bool:
    """Truthiness used by bare-field expressions."""
    if value is MISSING or value is None or value is False:
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value != 0
    if isinstance(value, (str, list, tuple, dict, set)):
        return len(value) > 0
    return bool(value)


def format_scalar(value: Any) -> str:
    if value is None or value is MISSING:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str)
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _strip_quotes(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


# ----------------------------------------------------------------------
# Expression mini-language
def evaluate_expression(expression: str, context: dict[str, Any]) -> bool:
    """Evaluate ``field OP value`` or a bare ``field`` truthiness check.

    Only the first operator found (in ``EXPRESSION_OPERATORS`` order) splits
    the expression. When both sides look numeric they are compared as
    numbers, otherwise as strings. Anything unparseable is ``False``.
    """
    if not isinstance(expression, str) or not expression.strip():
        return False
    expression = expression.strip()

    for operator in EXPRESSION_OPERATORS:
        if operator in expression:
            left, right = expression.split(operator, 1)
            actual = lookup(context, left.strip())
            expected = _strip_quotes(right)
            return _compare(actual, operator, expected)

    return is_truthy(lookup(context, expression))


def _compare(actual: Any, operator: str, expected: str) -> bool:
    if actual is MISSING:
        actual = None
    if is_numeric(actual) and is_numeric(expected):
        left: Any = to_number(actual)
        right: Any = to_number(expected)
    else:
        left = format_scalar(actual)
        right = expected
    if operator == "==":
        return left == right
    if operator == "!=":
        return left != right
    try:
        if operator == ">":
            return left > right
        if operator == ">=":
            return left >= right
        if operator == "<":
            return left < right
        if operator == "<=":
            return left <= right
    except TypeError:
        return False
    return False


# ----------------------------------------------------------------------
# Durations and deadlines
def parse_deadline(value: Any, now: Optional[datetime] = None) -> Optional[datetime]:
    """Parse ``"3d"``/``"4h"``/``"30m"`` or an ISO date into an aware datetime.

    Returns ``None`` for anything that cannot be parsed.
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value.strip():
        return None
    now = now or utcnow()
    text = value.strip()
    match = _DURATION.match(text)
    if match:
        amount = int(match.group(1))
        unit = match.group(2).lower()
        if unit == "d":
            return now + timedelta(days=amount)
        if unit == "h":
            return now + timedelta(hours=amount)
        return now + timedelta(minutes=amount)
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Unparseable deadline value: {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ----------------------------------------------------------------------
# Templates and parameter values
class ContextResolver:
    """Resolve templated strings and parameter descriptors against a context.

    ``settings`` is used for ``{{setting:key}}`` templates and for
    ``{"type": "app_setting"}`` descriptors.
    """

    def __init__(self, settings: Optional["SettingsLookup"] = None):
        self.settings = settings

    def _setting(self, key: str, default: Any = None) -> Any:
        if self.settings is None:
            return default
        return self.settings.get_setting(key, default)

    def _token_value(self, token: str, context: dict[str, Any]) -> Any:
        if token == "now":
            return utcnow().isoformat()
        if token.startswith("setting:"):
            return self._setting(token[len("setting:"):].strip())
        return resolve_path(context, token)

    def render(self, template: str, context: dict[str, Any]) -> Any:
        """Substitute ``{{path}}`` placeholders.

        A template consisting of a single placeholder keeps the resolved
        value's type; inline placeholders are stringified, with lists and
        dicts JSON-encoded. ``{{increment}}`` is left for ``set_context``.
        """
        if "{{" not in template:
            return template
        whole = _TEMPLATE.fullmatch(template.strip())
        if whole:
            token = whole.group(1)
            if token == "increment":
                return template
            return self._token_value(token, context)

        def substitute(match: re.Match) -> str:
            token = match.group(1)
            if token == "increment":
                return match.group(0)
            return format_scalar(self._token_value(token, context))

        return _TEMPLATE.sub(substitute, template)

    def resolve_value(self, value: Any, context: dict[str, Any], default: Any = None) -> Any:
        """Resolve a parameter value.

        Accepts plain scalars, ``$.path`` strings, templated strings and
        descriptors ``{"type": "fixed"|"context"|"app_setting"|"entity_field", ...}``.
        """
        if isinstance(value, str):
            if value.startswith("$."):
                return resolve_path(context, value, default)
            return self.render(value, context)
        if isinstance(value, dict):
            kind = value.get("type")
            if kind in VALUE_DESCRIPTOR_TYPES:
                return self._resolve_descriptor(kind, value, context, default)
            return {k: self.resolve_value(v, context) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve_value(v, context) for v in value]
        return default if value is None else value

    def _resolve_descriptor(
        self, kind: str, value: dict[str, Any], context: dict[str, Any], default: Any
    ) -> Any:
        fallback = value.get("default", default)
        if kind == "fixed":
            return value.get("value", fallback)
        if kind == "context":
            return resolve_path(context, str(value.get("path", "")), fallback)
        if kind == "app_setting":
            key = value.get("key")
            if not key:
                return fallback
            result = self._setting(str(key), fallback)
            return fallback if result is None else result
        field = str(value.get("field", ""))
        entity = context.get("entity") if isinstance(context, dict) else None
        if not field or not isinstance(entity, dict):
            return fallback
        result = resolve_path(entity, field)
        return fallback if result is None else result

    def resolve_params(self, params: dict[str, Any], context: dict[str, Any]) -> dict[str, Any]:
        return {key: self.resolve_value(value, context) for key, value in (params or {}).items()}
