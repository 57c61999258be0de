"""
Exceptions raised by the workflow orchestration layer.

``ConfigurationMissing``, ``UnknownScenario`` and ``TriggerNotFound`` are
raised synchronously from ``start_workflow`` before anything runs.
``StepExecutionFailure`` is recorded on the step / execution rows and
surfaced through the event stream only.
"""

from __future__ import annotations

from typing import Iterable, List


class WorkflowError(Exception):
    """Base class for orchestration errors."""


class ConfigurationMissing(WorkflowError):
    """One or more required configuration settings could not be resolved."""

    def __init__(self, missing_keys: Iterable[str]):
        self.missing_keys: List[str] = list(missing_keys)
        lines = "\n".join(f"- {key}" for key in self.missing_keys)
        super().__init__(
            f"Missing required configuration settings:\n{lines}\n\n"
            "Seed the demo configuration (POST /api/demo/seed) or configure these keys."
        )


class UnknownScenario(WorkflowError):
    def __init__(self, scenario_key: str):
        self.scenario_key = scenario_key
        super().__init__(f"Unknown scenario: {scenario_key}")


class TriggerNotFound(WorkflowError):
    def __init__(self, trigger_id: int):
        self.trigger_id = trigger_id
        super().__init__(f"Inbound message not found: {trigger_id}")


class StepExecutionFailure(WorkflowError):
    """An unexpected error while running one step; terminal for the execution."""

    def __init__(self, step_order: int, step_name: str, detail: str):
        self.step_order = step_order
        self.step_name = step_name
        self.detail = detail
        super().__init__(f"Step {step_order} ({step_name}) failed: {detail}")
