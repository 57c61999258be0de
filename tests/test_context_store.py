"""Tests for the live execution registry."""

from __future__ import annotations

import threading

import pytest

from models.schemas import StepDefinition
from services.context_store import ExecutionContext, ExecutionContextStore


def _steps(*names):
    return [StepDefinition(step_order=i, step_name=name) for i, name in enumerate(names, start=1)]


def _context(execution_id="demo-1", steps=None):
    return ExecutionContext(
        execution_id=execution_id,
        correlated_entity_id=7,
        user_id="user-1",
        scenario_key="demo-scenario",
        persona="rachel",
        steps=steps if steps is not None else _steps("Intake", "Assess", "Notify"),
    )


class TestExecutionContext:

    def test_record_result_advances(self):
        ctx = _context()
        ctx.record_result(ctx.next_step(), {"ok": 1})
        assert ctx.current_step_index == 1
        assert ctx.next_step().name == "Assess"
        assert list(ctx.accumulated_results) == ["Intake"]

    def test_record_out_of_order_rejected(self):
        ctx = _context()
        with pytest.raises(RuntimeError, match="out of order"):
            ctx.record_result(ctx.steps[1], {})
        assert ctx.current_step_index == 0

    def test_record_past_end_rejected(self):
        ctx = _context(steps=_steps("Only"))
        ctx.record_result(ctx.steps[0], {})
        assert ctx.finished
        assert ctx.next_step() is None
        with pytest.raises(RuntimeError, match="already recorded"):
            ctx.record_result(ctx.steps[0], {})

    def test_snapshot(self):
        ctx = _context()
        ctx.record_result(ctx.steps[0], {})
        snap = ctx.snapshot()
        assert snap.execution_id == "demo-1"
        assert snap.correlated_entity_id == 7
        assert snap.current_step_index == 1
        assert snap.total_steps == 3
        assert snap.completed_steps == ["Intake"]


class TestExecutionContextStore:

    def test_add_get_remove(self):
        store = ExecutionContextStore()
        ctx = _context()
        store.add(ctx)
        assert "demo-1" in store
        assert store.get("demo-1") is ctx
        assert len(store) == 1
        assert store.remove("demo-1") is ctx
        assert store.remove("demo-1") is None
        assert store.get("demo-1") is None

    def test_duplicate_id_rejected(self):
        store = ExecutionContextStore()
        store.add(_context())
        with pytest.raises(KeyError):
            store.add(_context())

    def test_concurrent_add_and_remove(self):
        store = ExecutionContextStore()

        def worker(offset):
            for i in range(200):
                eid = f"demo-{offset}-{i}"
                store.add(_context(eid))
                assert store.get(eid) is not None
                store.remove(eid)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(store) == 0
        assert store.active() == []
