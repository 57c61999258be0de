"""
Business rule evaluation.

A step's business rule lives in the config store under
``demo.workflow.rules.<slug>_rules`` and is evaluated against that step's
output merged over the accumulated execution context.  Rules use a safe
JSON DSL; no eval()/exec().

Rule format (JSON object)::

    {
      "conditions": {"any": [
          {"field": "referral_triggers", "op": "len_gt", "value": 0},
          {"field": "risk_score", "op": "gte", "value": 80}
      ]},
      "actions": ["flag_for_review", "requires_referral"],
      "reason": "Referral to senior underwriter required"
    }

Condition format:
  Simple:   {"field": "risk.score", "op": "gte", "value": 80}
  Compound: {"all": [...]}, {"any": [...]}, {"not": {...}}
  Legacy:   {"has_attachments": true, "priority": "urgent"}  (every field equals)

Supported operators: eq, ne, gt, lt, gte, lte, in, not_in, contains,
starts_with, exists, not_exists, truthy, len_gt, len_gte

A truthy predicate surfaces the rule's actions.  It stops the execution
only if one of the surfaced actions is a configured stop marker.  Missing or
malformed rules never raise: they degrade to "continue" with a warning.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from models.schemas import RuleEvaluation

logger = logging.getLogger(__name__)

DEFAULT_STOP_ACTIONS = ("stop", "requires_referral")

_MISSING = object()


class MalformedRule(ValueError):
    """The rule's structure cannot be evaluated."""


# =====================================================================
# Safe rule evaluation: NO eval()/exec()
# =====================================================================

def _length(a: Any) -> int:
    return len(a) if isinstance(a, (list, tuple, set, dict, str)) else 0


_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda a, b: a == b,
    "ne": lambda a, b: a != b,
    "gt": lambda a, b: a > b,
    "lt": lambda a, b: a < b,
    "gte": lambda a, b: a >= b,
    "lte": lambda a, b: a <= b,
    "in": lambda a, b: a in b if isinstance(b, (list, tuple, set)) else False,
    "not_in": lambda a, b: a not in b if isinstance(b, (list, tuple, set)) else True,
    "contains": lambda a, b: b in a if isinstance(a, (list, tuple, set)) else str(b) in str(a),
    "starts_with": lambda a, b: str(a).startswith(str(b)),
    "exists": lambda a, b: a is not _MISSING,
    "not_exists": lambda a, b: a is _MISSING,
    "truthy": lambda a, b: a is not _MISSING and bool(a),
    "len_gt": lambda a, b: _length(a) > b,
    "len_gte": lambda a, b: _length(a) >= b,
}

_PRESENCE_OPERATORS = {"exists", "not_exists", "truthy"}


def _resolve_field(data: Mapping[str, Any], path: str) -> Any:
    """Walk a dotted path through nested mappings / lists; ``_MISSING`` if absent."""
    current: Any = data
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


def _evaluate_condition(condition: Any, data: Mapping[str, Any]) -> bool:
    """Evaluate a single condition or compound condition against ``data``."""
    if not isinstance(condition, dict):
        raise MalformedRule(f"condition is not an object: {condition!r}")

    if "all" in condition:
        subconds = condition["all"]
        if not isinstance(subconds, list):
            raise MalformedRule("'all' must be a list")
        return all(_evaluate_condition(c, data) for c in subconds)

    if "any" in condition:
        subconds = condition["any"]
        if not isinstance(subconds, list):
            raise MalformedRule("'any' must be a list")
        return any(_evaluate_condition(c, data) for c in subconds)

    if "not" in condition:
        return not _evaluate_condition(condition["not"], data)

    if "field" in condition:
        field = condition.get("field")
        op = condition.get("op", "eq")
        if not isinstance(field, str) or not field:
            raise MalformedRule(f"condition field must be a non-empty string: {condition!r}")
        if op not in _OPERATORS:
            raise MalformedRule(f"unknown operator: {op}")

        actual = _resolve_field(data, field)
        if actual is _MISSING and op not in _PRESENCE_OPERATORS:
            return False
        try:
            return bool(_OPERATORS[op](actual, condition.get("value")))
        except (TypeError, ValueError):
            return False

    # Legacy flat mapping: every listed field must equal its expected value.
    return all(_resolve_field(data, name) == expected for name, expected in condition.items())


def _parse_rule(raw: Any) -> Optional[Dict[str, Any]]:
    """Accept a rule as a dict or a JSON string; ``None`` for an empty rule."""
    if raw is None:
        return None
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            raise MalformedRule(f"rule is not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise MalformedRule(f"rule is not an object: {type(raw).__name__}")
    return raw or None


def _merge(step_output: Any, context: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    data: Dict[str, Any] = dict(context or {})
    if isinstance(step_output, Mapping):
        data.update(step_output)
    data["output"] = step_output
    return data


def evaluate(
    rule: Any,
    step_output: Any,
    context: Optional[Mapping[str, Any]] = None,
    stop_actions: Optional[Iterable[str]] = None,
) -> RuleEvaluation:
    """
    Apply ``rule`` to a step's output.

    Returns ``RuleEvaluation(should_continue=True)`` with no actions when the
    rule is absent, has no conditions, or is malformed.
    """
    stops = set(stop_actions if stop_actions is not None else DEFAULT_STOP_ACTIONS)

    try:
        parsed = _parse_rule(rule)
        if parsed is None or not parsed.get("conditions"):
            return RuleEvaluation()

        actions = parsed.get("actions", [])
        if not isinstance(actions, list) or not all(isinstance(a, str) for a in actions):
            raise MalformedRule("'actions' must be a list of strings")

        matched = _evaluate_condition(parsed["conditions"], _merge(step_output, context))
    except Exception as e:
        logger.warning(f"Rule evaluation failed, continuing with defaults: {e}")
        return RuleEvaluation()

    if not matched:
        return RuleEvaluation(rule_applied=True)

    surfaced: List[str] = list(actions)
    stopping = [a for a in surfaced if a in stops]
    reason = None
    if stopping:
        reason = str(parsed.get("reason") or f"Stopped by rule action: {stopping[0]}")

    return RuleEvaluation(
        should_continue=not stopping,
        suggested_actions=surfaced,
        matched=True,
        rule_applied=True,
        reason=reason,
    )
