"""Tests for the execution context and variable store."""

import pytest

from conftest import graph, node
from core.exceptions import ExecutionError, InvalidStateTransition
from workflow.context import ExecutionContext, ExecutionStatus, NodeExecution, VariableStore


def _context(n_nodes: int = 2) -> ExecutionContext:
    return ExecutionContext(graph(*[node(f"n{i}", "t") for i in range(n_nodes)]), input_data={"x": 1})


def _succeeded(node_id: str, **outputs) -> NodeExecution:
    return NodeExecution(node_id=node_id, node_type="t", status="succeeded", outputs=outputs)


@pytest.mark.unit
class TestExecutionContext:
    """Status machine, bookkeeping and serialization."""

    def test_initial_state(self):
        ctx = _context()
        assert ctx.execution_id.startswith("exec_")
        assert ctx.status == ExecutionStatus.PENDING
        assert ctx.start_time is None and ctx.end_time is None
        assert ctx.result is None and ctx.error is None

    def test_unique_ids(self):
        assert _context().execution_id != _context().execution_id

    def test_happy_path_transitions(self):
        ctx = _context()
        ctx.start()
        assert ctx.status == ExecutionStatus.RUNNING
        ctx.complete({"n1": {"out": 1}})
        assert ctx.status == ExecutionStatus.COMPLETED
        assert ctx.result == {"n1": {"out": 1}}
        assert ctx.end_time >= ctx.start_time

    @pytest.mark.parametrize("finish", ["complete", "fail", "cancel"])
    def test_terminal_states_are_sinks(self, finish):
        ctx = _context()
        ctx.start()
        if finish == "complete":
            ctx.complete({})
        elif finish == "fail":
            ctx.fail("boom")
        else:
            ctx.cancel()

        with pytest.raises(InvalidStateTransition):
            ctx.start()
        with pytest.raises(InvalidStateTransition):
            ctx.complete({})
        with pytest.raises(InvalidStateTransition):
            ctx.fail("again")
        with pytest.raises(InvalidStateTransition):
            ctx.record_node_execution(_succeeded("n0"))

    def test_complete_requires_running(self):
        with pytest.raises(InvalidStateTransition):
            _context().complete({})

    def test_cancel_sets_event(self):
        ctx = _context()
        ctx.start()
        ctx.cancel()
        assert ctx.cancel_event.is_set()
        assert ctx.is_cancelled
        assert ctx.status == ExecutionStatus.CANCELLED

    def test_fail_with_execution_error(self):
        ctx = _context()
        ctx.start()
        ctx.fail(ExecutionError("bad input", node_id="n0", node_type="t"))
        assert ctx.error["type"] == "ExecutionError"
        assert ctx.error["node_id"] == "n0"
        assert ctx.error["message"] == "bad input"

    def test_record_and_lookup(self):
        ctx = _context()
        ctx.start()
        ctx.record_node_execution(_succeeded("n0", out=5))
        assert ctx.executed_nodes == {"n0"}
        assert ctx.get_node_output("n0") == {"out": 5}
        assert ctx.get_node_output("n0", "out") == 5
        assert ctx.get_node_output("n1") is None

    def test_progress(self):
        ctx = _context(4)
        ctx.start()
        ctx.record_node_execution(_succeeded("n0"))
        ctx.mark_skipped("n1")
        progress = ctx.progress()
        assert progress == {"total": 4, "executed": 1, "succeeded": 1, "skipped": 1, "percentage": 50}

    def test_progress_hundred_only_when_completed(self):
        ctx = _context(1)
        ctx.start()
        ctx.record_node_execution(_succeeded("n0"))
        assert ctx.progress()["percentage"] == 99
        ctx.complete({})
        assert ctx.progress()["percentage"] == 100

    def test_failed_node_not_counted_as_progress(self):
        ctx = _context(2)
        ctx.start()
        ctx.record_node_execution(_succeeded("n0"))
        ctx.record_node_execution(NodeExecution("n1", "t", "failed", error={"message": "x"}))
        ctx.fail({"message": "x"})
        progress = ctx.progress()
        assert progress["executed"] == 2
        assert progress["succeeded"] == 1
        assert progress["percentage"] == 50

    def test_to_dict(self):
        ctx = _context()
        ctx.start()
        ctx.variables.set("k", "v")
        ctx.record_node_execution(_succeeded("n0", out=1))
        data = ctx.to_dict()
        assert data["execution_id"] == ctx.execution_id
        assert data["workflow"] == {"name": "test", "node_count": 2}
        assert data["status"] == "running"
        assert data["end_time"] is None
        assert data["duration"] >= 0
        assert set(data["progress"]) == {"total", "executed", "succeeded", "skipped", "percentage"}
        assert "node_executions" not in data

        detailed = ctx.to_dict(include_nodes=True)
        assert detailed["executed_nodes"] == ["n0"]
        assert detailed["node_executions"]["n0"]["outputs"] == {"out": 1}
        assert detailed["variables"] == {"k": "v"}


@pytest.mark.unit
class TestVariableStore:
    """Run-scoped variables."""

    def test_set_returns_previous(self):
        store = VariableStore()
        assert store.set("a", 1) is None
        assert store.set("a", 2) == 1
        assert store.get("a") == 2

    def test_compare_and_swap(self):
        store = VariableStore({"counter": 1})
        assert store.compare_and_swap("counter", 1, 2) is True
        assert store.compare_and_swap("counter", 1, 3) is False
        assert store.get("counter") == 2

    def test_compare_and_swap_unset(self):
        store = VariableStore()
        assert store.compare_and_swap("lock", None, "owner-a") is True
        assert store.compare_and_swap("lock", None, "owner-b") is False
        assert store.get("lock") == "owner-a"

    def test_delete_and_contains(self):
        store = VariableStore({"a": 1})
        assert "a" in store
        assert len(store) == 1
        assert store.delete("a") is True
        assert store.delete("a") is False
        assert "a" not in store

    def test_snapshot_is_a_copy(self):
        store = VariableStore({"a": 1})
        snap = store.snapshot()
        snap["a"] = 99
        assert store.get("a") == 1
