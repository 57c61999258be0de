"""
Workflow orchestrator.

Drives one underwriting workflow run per ``start_workflow`` call:

    start_workflow()  validate config, persist the execution, register the
                      live context, schedule the sequencer, return the id
    _run()            for each configured step (in order):
                        record the step as running, emit ``step_started``,
                        do the step's work (simulated delay + template render),
                        evaluate the step's business rule, record the step as
                        completed, emit ``step_completed``, then either stop
                        (rule stop marker), finish (last step) or wait the
                        inter-step delay and continue

Exactly one terminal event is emitted per execution and it is always the
last one: ``execution_completed``, ``execution_failed`` or
``execution_cancelled``.  The live context is removed from the store when the
run ends, whatever the outcome.

Database writes and config store reads run on worker threads
(``asyncio.to_thread``) so one run never stalls the loop for the others or
for the broadcaster.

Steps of an enabled parallel group run together, but their completions are
committed and emitted in step order once the whole group has settled.  When
a member fails, earlier members complete normally, later successful members
are recorded as failed with detail ``aborted``, and the run fails at the
lowest-ordered failure.

Timing for each step resolves through three tiers, first hit wins:

    demo.workflow.step-timing.<slug>   processing_time_ms / inter_step_delay_ms
    demo.scenarios.<scenario>          default_processing_time_ms / inter_step_delay_ms
    demo.workflow.config               default_processing_time_ms / inter_step_delay_ms

and falls back to ``Settings`` defaults (a bounded random processing time).
"""

from __future__ import annotations

import asyncio
import logging
import random
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from config import Settings, settings as default_settings
from models.database import SessionFactory, SessionLocal, session_scope
from models.schemas import (
    EventType,
    ExecutionContextRead,
    ExecutionStatus,
    RuleEvaluation,
    StepDefinition,
    WorkflowEvent,
)
from services import records
from services.broadcaster import EventBroadcaster, Handler
from services.config_service import ConfigService
from services.context_store import ExecutionContext, ExecutionContextStore
from services.errors import ConfigurationMissing, StepExecutionFailure, TriggerNotFound, UnknownScenario
from services.rules import evaluate
from services.step_config import (
    DEFAULT_PERSONA_KEY,
    PARALLEL_GROUPS_KEY,
    STEPS_PREFIX,
    STOP_ACTIONS_KEY,
    WORKFLOW_CONFIG_KEY,
    load_workflow_steps,
    rule_key,
    scenario_key as scenario_config_key,
    step_identity,
    step_slug,
    template_key,
    timing_key,
)
from services.templates import render

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]

REQUIRED_WORKFLOW_FIELDS = ("strategy", "workflow_type")


# =====================================
# Step work
# =====================================

class StepWorker(ABC):
    """The work one step performs; returns the step's output."""

    @abstractmethod
    async def perform(
        self,
        step: StepDefinition,
        template: Any,
        context: Dict[str, Any],
        processing_time_ms: float,
    ) -> Any:
        ...


class SimulatedStepWorker(StepWorker):
    """Waits the step's processing time, then renders its output template."""

    def __init__(self, sleep: Sleep = asyncio.sleep) -> None:
        self._sleep = sleep

    async def perform(self, step, template, context, processing_time_ms):
        await self._sleep(processing_time_ms / 1000.0)
        return render(template, context)


class _CancelRequested(Exception):
    pass


@dataclass
class _StepOutcome:
    step: StepDefinition
    step_id: int
    started_at: datetime
    completed_at: datetime
    result: Dict[str, Any]
    evaluation: RuleEvaluation
    duration_ms: int


def _as_ms(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if value >= 0 else None


# =====================================
# Orchestrator
# =====================================

class WorkflowOrchestrator:
    """Starts, sequences, cancels and reports on workflow executions."""

    def __init__(
        self,
        config: ConfigService,
        session_factory: SessionFactory = SessionLocal,
        store: Optional[ExecutionContextStore] = None,
        broadcaster: Optional[EventBroadcaster] = None,
        worker: Optional[StepWorker] = None,
        sleep: Sleep = asyncio.sleep,
        app_settings: Settings = default_settings,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._config = config
        self._session_factory = session_factory
        self._store = store if store is not None else ExecutionContextStore()
        self._broadcaster = broadcaster or EventBroadcaster(app_settings.subscriber_queue_size)
        self._worker = worker or SimulatedStepWorker(sleep)
        self._sleep = sleep
        self._settings = app_settings
        self._rng = rng or random.Random()
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def store(self) -> ExecutionContextStore:
        return self._store

    @property
    def broadcaster(self) -> EventBroadcaster:
        return self._broadcaster

    # ---------------------------------
    # Public API
    # ---------------------------------

    async def start_workflow(
        self,
        trigger_id: int,
        user_id: str,
        scenario_key: str,
        wait_for_subscriber: bool = False,
    ) -> str:
        """
        Validate configuration, persist a new execution and schedule its steps.

        Returns the execution id immediately; steps run on the event loop.
        Configuration reads and database writes run on a worker thread.

        Raises:
            TriggerNotFound: ``trigger_id`` names no inbound message
            ConfigurationMissing: persona, steps, workflow config or templates are missing
            UnknownScenario: ``scenario_key`` has no scenario definition
        """
        ctx = await asyncio.to_thread(self._prepare_execution, trigger_id, user_id, scenario_key)

        self._store.add(ctx)
        task = asyncio.get_running_loop().create_task(self._run(ctx, wait_for_subscriber))
        self._tasks[ctx.execution_id] = task
        task.add_done_callback(lambda _t, eid=ctx.execution_id: self._tasks.pop(eid, None))

        logger.info(
            f"Workflow {ctx.execution_id} scheduled: {ctx.total_steps} steps, "
            f"scenario={scenario_key}, persona={ctx.persona}"
        )
        return ctx.execution_id

    def _prepare_execution(self, trigger_id: int, user_id: str, scenario_key: str) -> ExecutionContext:
        with session_scope(self._session_factory) as db:
            message = records.get_message(db, trigger_id)
            if message is None:
                raise TriggerNotFound(trigger_id)
            trigger = message.to_context()

        persona = trigger.get("persona") or self._config.get_setting(DEFAULT_PERSONA_KEY)
        if not persona:
            raise ConfigurationMissing([DEFAULT_PERSONA_KEY])

        try:
            steps = load_workflow_steps(self._config, persona)
        except ValueError as e:
            raise ConfigurationMissing([f"{STEPS_PREFIX}* ({e})"]) from e
        if not steps:
            raise ConfigurationMissing([f"{STEPS_PREFIX}*"])

        scenario = self._config.get_setting(scenario_config_key(scenario_key), persona)
        if not isinstance(scenario, dict):
            raise UnknownScenario(scenario_key)

        missing = self.validate_required_config(scenario_key, persona, steps)
        if missing:
            raise ConfigurationMissing(missing)

        workflow_config = self._config.get_setting(WORKFLOW_CONFIG_KEY, persona) or {}
        execution_id = f"demo-{uuid.uuid4()}"
        ctx = ExecutionContext(
            execution_id=execution_id,
            correlated_entity_id=trigger_id,
            user_id=user_id,
            scenario_key=scenario_key,
            persona=persona,
            steps=steps,
            trigger=trigger,
            scenario=scenario,
            workflow_config=workflow_config,
        )

        with session_scope(self._session_factory) as db:
            records.create_execution(
                db,
                execution_id=execution_id,
                user_id=user_id,
                persona=persona,
                trigger_id=trigger_id,
                scenario_key=scenario_key,
                step_count=len(steps),
                strategy=workflow_config.get("strategy"),
                command=f"Underwriting workflow: {scenario_key}",
                metadata={
                    "is_demo": self._settings.is_demo,
                    "workflow_type": workflow_config.get("workflow_type"),
                    "trigger_subject": trigger.get("subject"),
                },
                started_at=ctx.started_at,
            )
            records.log_activity(
                db,
                user_id=user_id,
                activity=f"Started underwriting workflow for {scenario.get('insured_name', scenario_key)}",
                status=ExecutionStatus.RUNNING.value,
                persona=persona,
                metadata={"execution_id": execution_id, "scenario": scenario_key, "trigger_id": trigger_id},
            )
        return ctx


    def validate_required_config(
        self, scenario_key: str, persona: str, steps: List[StepDefinition],
    ) -> List[str]:
        """
        Keys that must be configured before a run can start, but are not.

        Checks the workflow config (with its strategy and workflow_type), the
        scenario definition, and an output template for every step.  Missing
        business rules are only logged.  Pure with respect to stored state.
        """
        missing: List[str] = []

        workflow_config = self._config.get_setting(WORKFLOW_CONFIG_KEY, persona)
        if not isinstance(workflow_config, dict):
            missing.append(WORKFLOW_CONFIG_KEY)
        else:
            for name in REQUIRED_WORKFLOW_FIELDS:
                if not workflow_config.get(name):
                    missing.append(f"{WORKFLOW_CONFIG_KEY}.{name}")

        if self._config.get_setting(scenario_config_key(scenario_key), persona) is None:
            missing.append(scenario_config_key(scenario_key))

        if not steps:
            missing.append(f"{STEPS_PREFIX}*")

        for step in steps:
            if self._config.get_setting(template_key(step), persona) is None:
                missing.append(template_key(step))
            if self._config.get_setting(rule_key(step), persona) is None:
                logger.warning(f"No business rule configured for step '{step.name}' ({rule_key(step)})")

        return missing

    def get_workflow_status(self, execution_id: str) -> Optional[ExecutionContextRead]:
        ctx = self._store.get(execution_id)
        return ctx.snapshot() if ctx is not None else None

    def active_workflows(self) -> List[ExecutionContextRead]:
        return [ctx.snapshot() for ctx in self._store.active()]

    def attach(self, execution_id: str, handler: Handler) -> bool:
        """Subscribe ``handler`` to an execution's events; True if the execution is live."""
        self._broadcaster.subscribe(execution_id, handler)
        ctx = self._store.get(execution_id)
        if ctx is None:
            return False
        ctx.subscriber_attached.set()
        return True

    def detach(self, execution_id: str, handler: Handler) -> None:
        self._broadcaster.unsubscribe(execution_id, handler)

    def cancel_workflow(self, execution_id: str) -> bool:
        """
        Request cooperative cancellation.

        The running step finishes its delay, is recorded as failed with
        detail ``cancelled``, and the run ends with ``execution_cancelled``.
        Returns False when the execution is not live.
        """
        ctx = self._store.remove(execution_id)
        if ctx is None:
            return False
        ctx.cancel_requested = True
        ctx.subscriber_attached.set()
        logger.info(f"Cancellation requested for {execution_id}")
        return True

    async def wait_for(self, execution_id: str, timeout: Optional[float] = None) -> None:
        """Block until the sequencer of ``execution_id`` has finished (no-op if not running)."""
        task = self._tasks.get(execution_id)
        if task is None:
            return
        await asyncio.wait_for(asyncio.shield(task), timeout)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self._broadcaster.close()

    # ---------------------------------
    # Sequencer
    # ---------------------------------

    async def _run(self, ctx: ExecutionContext, wait_for_subscriber: bool) -> None:
        try:
            if wait_for_subscriber:
                await self._await_subscriber(ctx)

            if ctx.cancel_requested:
                raise _CancelRequested()

            await self._db(records.update_execution, ctx.execution_id, ExecutionStatus.RUNNING)

            self._emit(ctx, EventType.EXECUTION_STARTED, payload={
                "status": ExecutionStatus.RUNNING.value,
                "scenario": ctx.scenario_key,
                "persona": ctx.persona,
                "userId": ctx.user_id,
                "triggerId": ctx.correlated_entity_id,
                "strategy": ctx.workflow_config.get("strategy"),
                "totalSteps": ctx.total_steps,
                "steps": [
                    {"stepOrder": s.order, "stepName": s.name, "layer": s.layer, "agentName": s.responsible_actor}
                    for s in ctx.steps
                ],
            })

            while True:
                batch, concurrency = await self._next_batch(ctx)
                if not batch:
                    await self._complete(ctx)
                    return

                evaluations = await self._advance(ctx, batch, concurrency)
                stop = next((ev for ev in evaluations if not ev.should_continue), None)
                if stop is not None:
                    logger.info(f"Workflow {ctx.execution_id} stopped by business rule: {stop.reason}")
                    await self._complete(ctx, reason=stop.reason)
                    return
                if ctx.finished:
                    await self._complete(ctx)
                    return

                await self._sleep(await self._inter_step_delay_ms(ctx, batch[-1]) / 1000.0)
                if ctx.cancel_requested:
                    raise _CancelRequested()

        except _CancelRequested:
            await self._cancelled(ctx)
        except asyncio.CancelledError:
            await self._failed(ctx, "Execution interrupted by service shutdown")
            raise
        except StepExecutionFailure as e:
            logger.error(f"Workflow {ctx.execution_id} failed: {e}")
            await self._failed(ctx, e.detail, step_order=e.step_order, step_name=e.step_name)
        except Exception as e:
            logger.error(f"Workflow {ctx.execution_id} failed: {e}", exc_info=True)
            await self._failed(ctx, str(e))
        finally:
            self._store.remove(ctx.execution_id)

    async def _await_subscriber(self, ctx: ExecutionContext) -> None:
        timeout = self._settings.subscriber_wait_timeout_s
        try:
            await asyncio.wait_for(ctx.subscriber_attached.wait(), timeout)
        except asyncio.TimeoutError:
            logger.info(f"No subscriber for {ctx.execution_id} after {timeout}s, starting anyway")

    async def _next_batch(self, ctx: ExecutionContext) -> Tuple[List[StepDefinition], int]:
        """The next step, or the run of consecutive same-layer steps of an enabled parallel group."""
        first = ctx.next_step()
        if first is None:
            return [], 1

        group = await self._parallel_group(ctx, first.layer)
        if group is None:
            return [first], 1

        batch = [first]
        for step in ctx.steps[ctx.current_step_index + 1:]:
            if step.layer != first.layer:
                break
            batch.append(step)
        return batch, max(1, min(group or len(batch), len(batch)))

    async def _parallel_group(self, ctx: ExecutionContext, layer: str) -> Optional[int]:
        groups = await self._setting(PARALLEL_GROUPS_KEY, ctx.persona)
        if not isinstance(groups, dict):
            return None
        entry = groups.get(layer)
        if not isinstance(entry, dict) or not entry.get("enabled"):
            return None
        limit = entry.get("max_concurrency")
        return int(limit) if isinstance(limit, int) and not isinstance(limit, bool) and limit > 0 else 0

    async def _advance(
        self, ctx: ExecutionContext, batch: List[StepDefinition], concurrency: int,
    ) -> List[RuleEvaluation]:
        inputs = self._step_inputs(ctx)
        begun: List[Tuple[StepDefinition, int, datetime]] = []
        try:
            for step in batch:
                begun.append(await self._begin_step(ctx, step, inputs))
        except StepExecutionFailure:
            for _, step_id, started_at in begun:
                await self._mark_step_failed(step_id, started_at, "aborted")
            raise

        if len(begun) == 1:
            outcomes: List[Any] = [await self._execute_step(ctx, *begun[0])]
        else:
            limit = asyncio.Semaphore(concurrency)

            async def bounded(step: StepDefinition, step_id: int, started_at: datetime) -> _StepOutcome:
                async with limit:
                    return await self._execute_step(ctx, step, step_id, started_at)

            outcomes = await asyncio.gather(*(bounded(*entry) for entry in begun), return_exceptions=True)

        # Outcomes are in step order; nothing after the first failure is recorded as completed.
        evaluations: List[RuleEvaluation] = []
        failure: Optional[BaseException] = None
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                if failure is None:
                    failure = outcome
            elif failure is not None:
                await self._mark_step_failed(outcome.step_id, outcome.started_at, "aborted")
            else:
                try:
                    await self._commit_step(outcome)
                except StepExecutionFailure as e:
                    failure = e
                    continue
                self._record_outcome(ctx, outcome)
                evaluations.append(outcome.evaluation)

        if failure is not None:
            raise failure
        return evaluations

    async def _begin_step(
        self, ctx: ExecutionContext, step: StepDefinition, inputs: Dict[str, Any],
    ) -> Tuple[StepDefinition, int, datetime]:
        """Persist the step as running and emit ``step_started``."""
        started_at = records.utcnow()
        try:
            step_id = await self._db(records.create_step, ctx.execution_id, step, started_at, inputs)
        except Exception as e:
            raise StepExecutionFailure(step.order, step.name, f"could not record step start: {e}") from e

        logger.info(f"{ctx.execution_id}: step {step.order}/{ctx.total_steps} '{step.name}' started")
        self._emit(ctx, EventType.STEP_STARTED, step_order=step.order, payload={
            **self._step_payload(ctx, step),
            "status": "running",
            "inputs": inputs,
        })
        return step, step_id, started_at

    async def _execute_step(
        self, ctx: ExecutionContext, step: StepDefinition, step_id: int, started_at: datetime,
    ) -> _StepOutcome:
        """Do the step's work and evaluate its rule; the completion is committed by the caller."""
        try:
            processing_ms = await self._processing_time_ms(ctx, step)
            template = await self._setting(template_key(step), ctx.persona)
            if template is None:
                raise LookupError(f"No output template configured at {template_key(step)}")

            output = await self._worker.perform(step, template, self._template_context(ctx, step), processing_ms)
            if ctx.cancel_requested:
                raise _CancelRequested()

            rule = await self._setting(rule_key(step), ctx.persona)
            evaluation = evaluate(
                rule,
                output,
                context=self._rule_context(ctx, step),
                stop_actions=await self._stop_actions(ctx),
            )

            completed_at = records.utcnow()
            duration_ms = records.elapsed_ms(started_at, completed_at)
            result = {
                "step_name": step.name,
                "step_order": step.order,
                "responsible_actor": step.responsible_actor,
                "layer": step.layer,
                "inputs": step.declared_inputs,
                "outputs": step.declared_outputs,
                "success_criteria": step.success_criteria,
                "step_output": output,
                "rule_evaluation": evaluation.model_dump(),
                "next_action": step.next_action,
                "processing_time_ms": processing_ms,
                "duration_ms": duration_ms,
                "timestamp": completed_at.isoformat(),
                "status": "completed",
            }
            return _StepOutcome(
                step=step,
                step_id=step_id,
                started_at=started_at,
                completed_at=completed_at,
                result=result,
                evaluation=evaluation,
                duration_ms=duration_ms,
            )

        except _CancelRequested:
            await self._mark_step_failed(step_id, started_at, "cancelled")
            raise
        except asyncio.CancelledError:
            await self._mark_step_failed(step_id, started_at, "interrupted")
            raise
        except Exception as e:
            await self._mark_step_failed(step_id, started_at, str(e))
            raise StepExecutionFailure(step.order, step.name, str(e)) from e

    async def _commit_step(self, outcome: _StepOutcome) -> None:
        try:
            await self._db(
                records.complete_step,
                outcome.step_id, outcome.completed_at, outcome.duration_ms, outcome.result,
            )
        except Exception as e:
            detail = f"could not record step completion: {e}"
            await self._mark_step_failed(outcome.step_id, outcome.started_at, detail)
            raise StepExecutionFailure(outcome.step.order, outcome.step.name, detail) from e

    def _record_outcome(self, ctx: ExecutionContext, outcome: _StepOutcome) -> None:
        step = outcome.step
        ctx.record_result(step, outcome.result)

        upcoming = ctx.next_step()
        next_action = step.next_action or (f"Next: {upcoming.name}" if upcoming else "Workflow Complete")
        self._emit(ctx, EventType.STEP_COMPLETED, step_order=step.order, payload={
            **self._step_payload(ctx, step),
            "status": "completed",
            "durationMs": outcome.duration_ms,
            "outputs": outcome.result["step_output"],
            "ruleEvaluation": outcome.result["rule_evaluation"],
            "nextAction": next_action,
            "completedSteps": ctx.current_step_index,
        })

    async def _mark_step_failed(self, step_id: Optional[int], started_at, detail: str) -> None:
        if step_id is None:
            return
        completed_at = records.utcnow()
        try:
            await self._db(
                records.fail_step, step_id, completed_at, records.elapsed_ms(started_at, completed_at), detail,
            )
        except Exception as e:
            logger.error(f"Could not mark step record {step_id} failed: {e}")

    # ---------------------------------
    # Terminal transitions
    # ---------------------------------

    async def _complete(self, ctx: ExecutionContext, reason: Optional[str] = None) -> None:
        completed_at = records.utcnow()
        duration_ms = records.elapsed_ms(ctx.started_at, completed_at)
        summary = {
            "workflow_completed": True,
            "stopped_by_rule": reason is not None,
            "reason": reason,
            "total_steps": ctx.total_steps,
            "steps_completed": ctx.current_step_index,
            "final_results": ctx.accumulated_results,
        }

        def write(db) -> None:
            records.update_execution(
                db, ctx.execution_id, ExecutionStatus.COMPLETED,
                completed_at=completed_at, result_summary=summary,
            )
            records.log_activity(
                db,
                user_id=ctx.user_id,
                activity=f"Completed underwriting workflow ({ctx.current_step_index}/{ctx.total_steps} steps)",
                status=ExecutionStatus.COMPLETED.value,
                persona=ctx.persona,
                metadata={"execution_id": ctx.execution_id, "reason": reason, "duration_ms": duration_ms},
            )

        await self._db(write)

        self._emit(ctx, EventType.EXECUTION_COMPLETED, payload={
            "status": ExecutionStatus.COMPLETED.value,
            "totalSteps": ctx.total_steps,
            "completedSteps": ctx.current_step_index,
            "durationMs": duration_ms,
            "stoppedByRule": reason is not None,
            "reason": reason,
            "results": ctx.accumulated_results,
        })
        logger.info(f"Workflow {ctx.execution_id} completed in {duration_ms}ms")

    async def _failed(
        self,
        ctx: ExecutionContext,
        detail: str,
        step_order: Optional[int] = None,
        step_name: Optional[str] = None,
    ) -> None:
        await self._finish_unsuccessfully(ctx, ExecutionStatus.FAILED, detail, {"failed_step": step_name})
        self._emit(ctx, EventType.EXECUTION_FAILED, step_order=step_order, payload={
            "status": ExecutionStatus.FAILED.value,
            "error": detail,
            "stepName": step_name,
            "completedSteps": ctx.current_step_index,
        })

    async def _cancelled(self, ctx: ExecutionContext) -> None:
        await self._finish_unsuccessfully(ctx, ExecutionStatus.CANCELLED, "cancelled", {})
        self._emit(ctx, EventType.EXECUTION_CANCELLED, payload={
            "status": ExecutionStatus.CANCELLED.value,
            "completedSteps": ctx.current_step_index,
            "totalSteps": ctx.total_steps,
        })
        logger.info(f"Workflow {ctx.execution_id} cancelled after {ctx.current_step_index} steps")

    async def _finish_unsuccessfully(
        self, ctx: ExecutionContext, status: ExecutionStatus, detail: str, extra: Dict[str, Any],
    ) -> None:
        """Best-effort terminal write; the terminal event is emitted even if this fails."""

        def write(db) -> None:
            records.update_execution(
                db, ctx.execution_id, status,
                completed_at=records.utcnow(),
                result_summary={
                    "workflow_completed": False,
                    "steps_completed": ctx.current_step_index,
                    "total_steps": ctx.total_steps,
                    **extra,
                },
                error_detail=detail,
            )
            records.log_activity(
                db,
                user_id=ctx.user_id,
                activity=f"Underwriting workflow {status.value}: {detail}",
                status=status.value,
                persona=ctx.persona,
                metadata={"execution_id": ctx.execution_id},
            )

        try:
            await self._db(write)
        except Exception as e:
            logger.error(f"Could not persist {status.value} state for {ctx.execution_id}: {e}", exc_info=True)

    # ---------------------------------
    # Worker-thread access
    # ---------------------------------

    async def _db(self, operation: Callable[..., Any], *args: Any) -> Any:
        """Run ``operation(db, *args)`` in its own transaction on a worker thread."""

        def work() -> Any:
            with session_scope(self._session_factory) as db:
                return operation(db, *args)

        return await asyncio.to_thread(work)

    async def _setting(self, key: str, persona: Optional[str]) -> Any:
        return await asyncio.to_thread(self._config.get_setting, key, persona)

    # ---------------------------------
    # Contexts, timing, events
    # ---------------------------------

    def _step_inputs(self, ctx: ExecutionContext) -> Dict[str, Any]:
        if ctx.current_step_index == 0:
            return {"trigger": ctx.trigger, "scenario": ctx.scenario, "scenario_key": ctx.scenario_key}
        return {"previous_results": dict(ctx.accumulated_results)}

    def _template_context(self, ctx: ExecutionContext, step: StepDefinition) -> Dict[str, Any]:
        values: Dict[str, Any] = dict(ctx.scenario)
        values.update({k: v for k, v in ctx.trigger.items() if v is not None})
        previous = list(ctx.accumulated_results)
        values.update({
            "execution_id": ctx.execution_id,
            "user_id": ctx.user_id,
            "persona": ctx.persona,
            "scenario_key": ctx.scenario_key,
            "step_key": step_slug(step),
            "step_name": step.name,
            "step_order": step.order,
            "layer": step.layer,
            "responsible_actor": step.responsible_actor,
            "total_steps": ctx.total_steps,
            "previous_step": previous[-1] if previous else None,
        })
        return values

    def _rule_context(self, ctx: ExecutionContext, step: StepDefinition) -> Dict[str, Any]:
        return {
            **ctx.scenario,
            "scenario": ctx.scenario,
            "scenario_key": ctx.scenario_key,
            "trigger": ctx.trigger,
            "results": dict(ctx.accumulated_results),
            "persona": ctx.persona,
            "step_order": step.order,
            "step_name": step.name,
        }

    async def _stop_actions(self, ctx: ExecutionContext) -> List[str]:
        configured = await self._setting(STOP_ACTIONS_KEY, ctx.persona)
        if isinstance(configured, list) and all(isinstance(a, str) for a in configured):
            return configured
        return list(self._settings.stop_actions)

    async def _timing(
        self, ctx: ExecutionContext, step: StepDefinition, step_field: str, default_field: str,
    ) -> Optional[float]:
        try:
            step_timing = await self._setting(timing_key(step), ctx.persona)
        except Exception as e:
            logger.warning(f"Step timing lookup failed for '{step.name}': {e}")
            step_timing = None

        for source, name in (
            (step_timing, step_field),
            (ctx.scenario, default_field),
            (ctx.workflow_config, default_field),
        ):
            if isinstance(source, dict):
                value = _as_ms(source.get(name))
                if value is not None:
                    return value
        return None

    async def _processing_time_ms(self, ctx: ExecutionContext, step: StepDefinition) -> float:
        value = await self._timing(ctx, step, "processing_time_ms", "default_processing_time_ms")
        if value is not None:
            return value
        low = self._settings.default_processing_min_ms
        high = max(low, self._settings.default_processing_max_ms)
        return self._rng.uniform(low, high)

    async def _inter_step_delay_ms(self, ctx: ExecutionContext, step: StepDefinition) -> float:
        value = await self._timing(ctx, step, "inter_step_delay_ms", "inter_step_delay_ms")
        return value if value is not None else float(self._settings.default_inter_step_delay_ms)

    def _step_payload(self, ctx: ExecutionContext, step: StepDefinition) -> Dict[str, Any]:
        return {
            "stepId": f"{ctx.execution_id}-{step_identity(step)}",
            "stepName": step.name,
            "agentName": step.responsible_actor,
            "layer": step.layer,
            "description": step.description,
            "totalSteps": ctx.total_steps,
        }

    def _emit(
        self,
        ctx: ExecutionContext,
        event_type: EventType,
        step_order: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        event = WorkflowEvent(
            type=event_type, execution_id=ctx.execution_id, step_order=step_order, payload=payload or {},
        )
        delivered = self._broadcaster.publish(ctx.execution_id, event)
        logger.debug(f"{ctx.execution_id}: {event_type.value} -> {delivered} subscriber(s)")
