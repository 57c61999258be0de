"""
Persistence helpers for execution records, step records, the activity feed
and inbound messages.

Every function takes an open session and leaves committing to the caller
(``session_scope`` in the sequencer, explicit commits in request handlers).
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session, selectinload

from models.executions import Activity, ExecutionRecord, StepRecord
from models.messages import InboundMessage
from models.schemas import ExecutionStatus, InboundMessageCreate, StepDefinition, StepStatus

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def elapsed_ms(started_at: datetime, completed_at: datetime) -> int:
    """Whole milliseconds between two timestamps, never negative."""
    return max(0, int((completed_at - started_at).total_seconds() * 1000))


# =====================================
# Executions
# =====================================

def create_execution(
    db: Session,
    execution_id: str,
    user_id: str,
    persona: str,
    trigger_id: int,
    scenario_key: str,
    step_count: int,
    strategy: Optional[str] = None,
    command: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    started_at: Optional[datetime] = None,
) -> ExecutionRecord:
    record = ExecutionRecord(
        execution_id=execution_id,
        user_id=user_id,
        persona=persona,
        trigger_id=trigger_id,
        scenario_key=scenario_key,
        step_count=step_count,
        strategy=strategy,
        command=command,
        status=ExecutionStatus.INITIALIZING.value,
        started_at=started_at or utcnow(),
        metadata_json=metadata or {},
    )
    db.add(record)
    db.flush()
    return record


def get_execution(db: Session, execution_id: str) -> Optional[ExecutionRecord]:
    return (
        db.query(ExecutionRecord)
        .options(selectinload(ExecutionRecord.steps))
        .filter(ExecutionRecord.execution_id == execution_id)
        .first()
    )


def list_executions(db: Session, limit: int = 50) -> List[ExecutionRecord]:
    return (
        db.query(ExecutionRecord)
        .order_by(ExecutionRecord.started_at.desc(), ExecutionRecord.id.desc())
        .limit(limit)
        .all()
    )


def update_execution(
    db: Session,
    execution_id: str,
    status: ExecutionStatus,
    completed_at: Optional[datetime] = None,
    result_summary: Optional[Dict[str, Any]] = None,
    error_detail: Optional[str] = None,
) -> ExecutionRecord:
    """Move an execution to ``status``; terminal states also stamp completion time and duration."""
    record = db.query(ExecutionRecord).filter(ExecutionRecord.execution_id == execution_id).first()
    if record is None:
        raise LookupError(f"Execution record not found: {execution_id}")

    record.status = status.value
    if completed_at is not None:
        record.completed_at = completed_at
        started = record.started_at
        if started is not None and started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        if started is not None:
            record.total_duration_ms = elapsed_ms(started, completed_at)
    if result_summary is not None:
        record.result_summary = result_summary
    if error_detail is not None:
        record.error_detail = error_detail
    db.flush()
    return record


# =====================================
# Steps
# =====================================

def create_step(
    db: Session,
    execution_id: str,
    step: StepDefinition,
    started_at: datetime,
    input_snapshot: Any = None,
) -> int:
    """Insert a running step row and return its primary key."""
    row = StepRecord(
        execution_id=execution_id,
        step_order=step.order,
        step_name=step.name,
        responsible_actor=step.responsible_actor,
        layer=step.layer,
        action=step.description or None,
        status=StepStatus.RUNNING.value,
        started_at=started_at,
        input_snapshot=input_snapshot,
    )
    db.add(row)
    db.flush()
    return row.id


def complete_step(
    db: Session, step_id: int, completed_at: datetime, duration_ms: int, output_snapshot: Any,
) -> StepRecord:
    row = db.get(StepRecord, step_id)
    if row is None:
        raise LookupError(f"Step record not found: {step_id}")
    row.status = StepStatus.COMPLETED.value
    row.completed_at = completed_at
    row.duration_ms = duration_ms
    row.output_snapshot = output_snapshot
    db.flush()
    return row


def fail_step(
    db: Session, step_id: int, completed_at: datetime, duration_ms: int, detail: str,
) -> StepRecord:
    row = db.get(StepRecord, step_id)
    if row is None:
        raise LookupError(f"Step record not found: {step_id}")
    row.status = StepStatus.FAILED.value
    row.completed_at = completed_at
    row.duration_ms = duration_ms
    row.error_detail = detail
    db.flush()
    return row


# =====================================
# Activity feed
# =====================================

def log_activity(
    db: Session,
    user_id: str,
    activity: str,
    status: str,
    persona: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Activity:
    row = Activity(
        user_id=user_id,
        activity=activity,
        persona=persona,
        status=status,
        metadata_json=metadata or {},
    )
    db.add(row)
    db.flush()
    return row


def list_activities(db: Session, limit: int = 50) -> List[Activity]:
    return db.query(Activity).order_by(Activity.timestamp.desc(), Activity.id.desc()).limit(limit).all()


# =====================================
# Inbound messages
# =====================================

def create_message(db: Session, message_in: InboundMessageCreate) -> InboundMessage:
    message = InboundMessage(**message_in.model_dump())
    db.add(message)
    db.commit()
    db.refresh(message)
    logger.info(f"Inbound message stored: id={message.id} subject='{message.subject[:40]}'")
    return message


def get_message(db: Session, message_id: int) -> Optional[InboundMessage]:
    return db.get(InboundMessage, message_id)


def list_messages(db: Session, limit: int = 50) -> List[InboundMessage]:
    return db.query(InboundMessage).order_by(InboundMessage.id.desc()).limit(limit).all()
