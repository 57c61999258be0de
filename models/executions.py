"""
SQLAlchemy ORM models for workflow execution records.

``ExecutionRecord``  one row per workflow run; status only moves forward
                     (initializing → running → completed | failed | cancelled).
``StepRecord``       one row per (execution, step order); written running,
                     transitioned to completed or failed exactly once.
``Activity``         append-only activity feed shown on the dashboard.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Text, DateTime, JSON, ForeignKey, Index, UniqueConstraint,
)
from sqlalchemy.orm import relationship, validates

from models.database import Base
from models.schemas import TERMINAL_EXECUTION_STATES, ExecutionStatus, StepStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionRecord(Base):
    __tablename__ = "workflow_executions"

    id = Column(Integer, primary_key=True, index=True)
    execution_id = Column(String(64), nullable=False, unique=True, index=True)

    user_id = Column(String(100), nullable=False, index=True)
    persona = Column(String(50), nullable=False, index=True)
    trigger_id = Column(Integer, nullable=False)
    scenario_key = Column(String(120), nullable=False)

    command = Column(Text, nullable=True)
    strategy = Column(String(50), nullable=True)

    status = Column(String(20), nullable=False, default=ExecutionStatus.INITIALIZING.value, index=True)
    step_count = Column(Integer, nullable=False, default=0)

    started_at = Column(DateTime, nullable=False, default=_utcnow)
    completed_at = Column(DateTime, nullable=True)
    total_duration_ms = Column(Integer, nullable=True)

    metadata_json = Column("metadata", JSON, nullable=True)
    result_summary = Column(JSON, nullable=True)
    error_detail = Column(Text, nullable=True)

    steps = relationship(
        "StepRecord",
        back_populates="execution",
        order_by="StepRecord.step_order",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("idx_workflow_executions_started_at", "started_at"),
    )

    @validates("status")
    def validate_status(self, key, value):
        value = ExecutionStatus(value).value
        current = self.status
        if current is not None and current != value:
            order = [s.value for s in ExecutionStatus]
            if ExecutionStatus(current) in TERMINAL_EXECUTION_STATES or order.index(value) < order.index(current):
                raise ValueError(f"Illegal execution transition {current} -> {value}")
        return value

    def __repr__(self):
        return f"<ExecutionRecord(execution_id='{self.execution_id}', status='{self.status}')>"


class StepRecord(Base):
    __tablename__ = "workflow_execution_steps"

    id = Column(Integer, primary_key=True, index=True)
    execution_id = Column(
        String(64), ForeignKey("workflow_executions.execution_id"), nullable=False, index=True,
    )
    step_order = Column(Integer, nullable=False)

    step_name = Column(String(200), nullable=False)
    responsible_actor = Column(String(200), nullable=False)
    layer = Column(String(50), nullable=False)
    action = Column(Text, nullable=True)

    status = Column(String(20), nullable=False, default=StepStatus.PENDING.value, index=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    input_snapshot = Column(JSON, nullable=True)
    output_snapshot = Column(JSON, nullable=True)
    error_detail = Column(Text, nullable=True)

    execution = relationship("ExecutionRecord", back_populates="steps")

    __table_args__ = (
        UniqueConstraint("execution_id", "step_order", name="uq_step_execution_order"),
    )

    @validates("status")
    def validate_status(self, key, value):
        value = StepStatus(value).value
        current = self.status
        if current in (StepStatus.COMPLETED.value, StepStatus.FAILED.value) and current != value:
            raise ValueError(f"Step {self.step_order} already {current}")
        return value

    @validates("duration_ms")
    def validate_duration(self, key, value):
        if value is not None and value < 0:
            raise ValueError("Step duration cannot be negative")
        return value

    def __repr__(self):
        return f"<StepRecord(execution_id='{self.execution_id}', order={self.step_order}, status='{self.status}')>"


class Activity(Base):
    __tablename__ = "activities"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(100), nullable=False, index=True)
    activity = Column(Text, nullable=False)
    persona = Column(String(50), nullable=True)
    status = Column(String(20), nullable=False)
    metadata_json = Column("metadata", JSON, nullable=True)
    timestamp = Column(DateTime, nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "activity": self.activity,
            "persona": self.persona,
            "status": self.status,
            "metadata": self.metadata_json or {},
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }
