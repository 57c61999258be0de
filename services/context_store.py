"""
Live execution registry.

Holds the mutable orchestration state of every running workflow, keyed by
execution id.  Each entry is owned by its own sequencer loop; the store only
guards insert / lookup / removal so the HTTP layer, the broadcaster
bookkeeping and concurrently running executions can share it.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from models.schemas import ExecutionContextRead, StepDefinition

logger = logging.getLogger(__name__)


@dataclass
class ExecutionContext:
    """Mutable state of one workflow run."""

    execution_id: str
    correlated_entity_id: int
    user_id: str
    scenario_key: str
    persona: str
    steps: List[StepDefinition]
    trigger: Dict[str, Any] = field(default_factory=dict)
    scenario: Dict[str, Any] = field(default_factory=dict)
    workflow_config: Dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    current_step_index: int = 0
    accumulated_results: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    cancel_requested: bool = False
    subscriber_attached: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    @property
    def finished(self) -> bool:
        return self.current_step_index >= self.total_steps

    def next_step(self) -> Optional[StepDefinition]:
        if self.finished:
            return None
        return self.steps[self.current_step_index]

    def record_result(self, step: StepDefinition, result: Dict[str, Any]) -> None:
        """Append a completed step's result and advance the index by one."""
        if self.finished:
            raise RuntimeError(f"{self.execution_id}: all {self.total_steps} steps already recorded")
        expected = self.steps[self.current_step_index]
        if step.order != expected.order:
            raise RuntimeError(
                f"{self.execution_id}: step {step.order} recorded out of order, expected {expected.order}"
            )
        self.accumulated_results[step.name] = result
        self.current_step_index += 1

    def snapshot(self) -> ExecutionContextRead:
        return ExecutionContextRead(
            execution_id=self.execution_id,
            correlated_entity_id=self.correlated_entity_id,
            user_id=self.user_id,
            scenario_key=self.scenario_key,
            persona=self.persona,
            current_step_index=self.current_step_index,
            total_steps=self.total_steps,
            completed_steps=list(self.accumulated_results),
        )


class ExecutionContextStore:
    """Thread-safe map of execution id → ExecutionContext."""

    def __init__(self) -> None:
        self._contexts: Dict[str, ExecutionContext] = {}
        self._lock = threading.Lock()

    def add(self, context: ExecutionContext) -> None:
        with self._lock:
            if context.execution_id in self._contexts:
                raise KeyError(f"Execution already registered: {context.execution_id}")
            self._contexts[context.execution_id] = context

    def get(self, execution_id: str) -> Optional[ExecutionContext]:
        with self._lock:
            return self._contexts.get(execution_id)

    def remove(self, execution_id: str) -> Optional[ExecutionContext]:
        with self._lock:
            return self._contexts.pop(execution_id, None)

    def active(self) -> List[ExecutionContext]:
        with self._lock:
            return list(self._contexts.values())

    def __contains__(self, execution_id: str) -> bool:
        with self._lock:
            return execution_id in self._contexts

    def __len__(self) -> int:
        with self._lock:
            return len(self._contexts)
