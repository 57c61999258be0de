"""
Step configuration source.

Loads the ordered step definitions of the underwriting workflow from the
config store and owns the dotted key conventions every other config lookup
of the sequencer uses.

Key layout::

    demo.workflow.config                          strategy, workflow_type, timing defaults
    demo.workflow.default_persona                 persona used when the trigger has none
    demo.workflow.steps.<step_key>                StepDefinition
    demo.workflow.output-templates.<slug>         output template per step
    demo.workflow.rules.<slug>_rules              business rule per step (optional)
    demo.workflow.step-timing.<slug>              processing / inter-step overrides
    demo.workflow.stop_actions                    action names that stop a run
    demo.workflow.parallel_groups                 opt-in same-layer parallel groups
    demo.scenarios.<scenario_key>                 scenario definition
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from models.schemas import StepDefinition

logger = logging.getLogger(__name__)

WORKFLOW_CONFIG_KEY = "demo.workflow.config"
DEFAULT_PERSONA_KEY = "demo.workflow.default_persona"
STOP_ACTIONS_KEY = "demo.workflow.stop_actions"
PARALLEL_GROUPS_KEY = "demo.workflow.parallel_groups"
STEPS_PREFIX = "demo.workflow.steps."
TEMPLATE_PREFIX = "demo.workflow.output-templates."
RULES_PREFIX = "demo.workflow.rules."
TIMING_PREFIX = "demo.workflow.step-timing."
SCENARIO_PREFIX = "demo.scenarios."
MESSAGE_TEMPLATE_PREFIX = "demo.email-templates."

_NON_WORD = re.compile(r"\s+")


def snake(name: str) -> str:
    return _NON_WORD.sub("_", name.strip().lower())


def step_identity(step: StepDefinition) -> str:
    """Stable identity of a step: ``step_<order>_<snake_name>`` unless an explicit key is set."""
    return step.key or f"step_{step.order}_{snake(step.name)}"


def step_slug(step: StepDefinition) -> str:
    """Slug used by the per-step template, rule and timing keys."""
    return step.key or snake(step.name)


def template_key(step: StepDefinition) -> str:
    return f"{TEMPLATE_PREFIX}{step_slug(step)}"


def rule_key(step: StepDefinition) -> str:
    return f"{RULES_PREFIX}{step_slug(step)}_rules"


def timing_key(step: StepDefinition) -> str:
    return f"{TIMING_PREFIX}{step_slug(step)}"


def scenario_key(scenario: str) -> str:
    return f"{SCENARIO_PREFIX}{scenario}"


def load_workflow_steps(config, persona: Optional[str] = None) -> List[StepDefinition]:
    """
    Read every ``demo.workflow.steps.*`` entry and return them sorted by order.

    Entries that do not validate as a step definition are skipped with a
    warning; duplicate orders are rejected because execution order must be
    total.
    """
    raw: Dict[str, Any] = config.list_settings(STEPS_PREFIX, persona=persona)
    steps: List[StepDefinition] = []

    for key, value in raw.items():
        if not isinstance(value, dict):
            logger.warning(f"Ignoring step definition {key}: not an object")
            continue
        data = dict(value)
        data.setdefault("key", key[len(STEPS_PREFIX):])
        try:
            steps.append(StepDefinition.model_validate(data))
        except ValidationError as e:
            logger.warning(f"Ignoring invalid step definition {key}: {e.error_count()} error(s)")

    steps.sort(key=lambda s: s.order)
    orders = [s.order for s in steps]
    if len(orders) != len(set(orders)):
        raise ValueError(f"Duplicate step orders in workflow configuration: {orders}")
    names = [s.name for s in steps]
    if len(names) != len(set(names)):
        raise ValueError(f"Duplicate step names in workflow configuration: {names}")
    return steps
