"""
Pydantic models and enums used throughout the orchestration service.

These models define the shape of step definitions loaded from the config
store, the events pushed to subscribers, and the request / response bodies
of the HTTP API.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ExecutionStatus(str, Enum):
    INITIALIZING = "initializing"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# Terminal states never transition again.
TERMINAL_EXECUTION_STATES = frozenset({
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
})


class EventType(str, Enum):
    EXECUTION_STARTED = "execution_started"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"
    EXECUTION_CANCELLED = "execution_cancelled"


# =====================================
# Step configuration
# =====================================

class StepDefinition(BaseModel):
    """One configured step of the underwriting workflow (read-only)."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    key: Optional[str] = Field(None, description="Explicit config key of the step")
    order: int = Field(..., ge=1, alias="step_order")
    name: str = Field(..., min_length=1, alias="step_name")
    responsible_actor: str = Field("Agent", alias="agent_type")
    layer: str = "Process"
    description: str = ""
    declared_inputs: List[str] = Field(default_factory=list, alias="inputs")
    declared_outputs: List[str] = Field(default_factory=list, alias="outputs")
    success_criteria: List[str] = Field(default_factory=list)
    nominal_processing_time_ms: Optional[int] = Field(None, alias="processing_time_ms")
    next_action: Optional[str] = None


class RuleEvaluation(BaseModel):
    """Outcome of applying a step's business rule to its output."""

    should_continue: bool = True
    suggested_actions: List[str] = Field(default_factory=list)
    matched: bool = False
    rule_applied: bool = False
    reason: Optional[str] = None


# =====================================
# Events
# =====================================

class WorkflowEvent(BaseModel):
    """A single state-transition notification for one execution."""

    type: EventType
    execution_id: str
    step_order: Optional[int] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_message(self) -> Dict[str, Any]:
        """Flat JSON object sent over the wire: ``{type, executionId, timestamp, ...payload}``."""
        message: Dict[str, Any] = dict(self.payload)
        message.update({
            "type": self.type.value,
            "executionId": self.execution_id,
            "timestamp": self.timestamp.isoformat(),
        })
        if self.step_order is not None:
            message["stepOrder"] = self.step_order
        return message


# =====================================
# API models
# =====================================

class StartWorkflowRequest(BaseModel):
    trigger_id: int = Field(..., gt=0, description="Inbound message that triggers the run")
    user_id: str = Field(..., min_length=1, max_length=100)
    scenario_key: str = Field(..., min_length=1, max_length=120)
    wait_for_subscriber: bool = Field(
        False, description="Hold step execution until a subscriber attaches"
    )


class StartWorkflowResponse(BaseModel):
    execution_id: str
    status: ExecutionStatus


class ExecutionContextRead(BaseModel):
    execution_id: str
    correlated_entity_id: int
    user_id: str
    scenario_key: str
    persona: str
    current_step_index: int
    total_steps: int
    completed_steps: List[str]


class StepRecordRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    step_order: int
    step_name: str
    responsible_actor: str
    layer: str
    status: StepStatus
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    input_snapshot: Optional[Any] = None
    output_snapshot: Optional[Any] = None
    error_detail: Optional[str] = None


class ExecutionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    execution_id: str
    user_id: str
    persona: str
    scenario_key: str
    trigger_id: int
    status: ExecutionStatus
    strategy: Optional[str] = None
    step_count: int
    started_at: datetime
    completed_at: Optional[datetime] = None
    total_duration_ms: Optional[int] = None
    result_summary: Optional[Dict[str, Any]] = None
    error_detail: Optional[str] = None
    steps: List[StepRecordRead] = Field(default_factory=list)


class ConfigSettingIn(BaseModel):
    value: Any = Field(..., description="Arbitrary JSON value")
    persona: Optional[str] = Field(None, max_length=50)
    updated_by: Optional[str] = Field(None, max_length=100)


class ConfigSettingRead(BaseModel):
    key: str
    persona: Optional[str] = None
    value: Any = None
    version: Optional[int] = None


class InboundMessageCreate(BaseModel):
    subject: str = Field(..., min_length=1, max_length=300)
    sender: str = Field(..., min_length=1, max_length=200)
    body: str = ""
    persona: Optional[str] = Field(None, max_length=50)
    demo_scenario: Optional[str] = Field(None, max_length=120)


class InboundMessageRead(InboundMessageCreate):
    model_config = ConfigDict(from_attributes=True)

    id: int
    created_at: datetime
