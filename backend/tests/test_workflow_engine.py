"""Tests for the workflow execution engine."""

import asyncio
import time

import httpx
import pytest
from structlog.testing import capture_logs

from conftest import descriptor, edge, graph, node
from core.events import ExecutionFinished, ExecutionStarted, NodeExecuted, NodeFailed
from core.exceptions import NotFoundError, ValidationError
from nodes.implementations import transform
from nodes.implementations.http_request import HttpRequestNode
from workflow.context import ExecutionStatus
from workflow.engine import WorkflowEngine


def _register(registry, node_type, func, inputs=(), outputs=("out",), required=()):
    registry.register(node_type, func, schema=descriptor(node_type, inputs, outputs, required))


def _emit(value, delay=0.0, log=None, name=None):
    """Node that waits, then emits ``value`` on ``out``."""

    async def func(inputs, parameters, context):
        if log is not None:
            log.append(f"start-{name}")
        await asyncio.sleep(delay)
        if log is not None:
            log.append(f"end-{name}")
        return {"out": value}

    return func


@pytest.mark.unit
class TestValidation:
    """Graphs are rejected before anything runs."""

    def test_cycle(self, engine, node_registry):
        _register(node_registry, "t.pass", lambda i, p, c: {"out": i.get("in")}, inputs=("in",))
        g = graph(
            node("a", "t.pass"), node("b", "t.pass"),
            edge("a", "out", "b", "in"), edge("b", "out", "a", "in"),
        )
        with pytest.raises(ValidationError) as exc:
            engine.validate(g)
        assert exc.value.cycle is not None

    def test_unknown_type_after_unregister(self, engine, node_registry):
        g = graph(node("f", "data.filter"))
        engine.validate(g, {"data": []})

        node_registry.unregister("data.filter")
        with pytest.raises(ValidationError, match="unknown type") as exc:
            engine.validate(g, {"data": []})
        assert exc.value.node_id == "f"

    def test_unknown_ports(self, engine, node_registry):
        _register(node_registry, "t.pass", lambda i, p, c: None, inputs=("in",))
        with pytest.raises(ValidationError, match="no output port 'nope'"):
            engine.validate(graph(node("a", "t.pass"), node("b", "t.pass"), edge("a", "nope", "b", "in")))
        with pytest.raises(ValidationError, match="no input port 'nope'"):
            engine.validate(graph(node("a", "t.pass"), node("b", "t.pass"), edge("a", "out", "b", "nope")))

    def test_unsatisfied_required_input(self, engine):
        g = graph(node("f", "data.filter"))
        with pytest.raises(ValidationError, match="required input 'data'"):
            engine.validate(g, {"other": 1})

    def test_invalid_parameters(self, engine):
        with pytest.raises(ValidationError, match="invalid parameters"):
            engine.validate(graph(node("t", "data.transform", language="python")))
        with pytest.raises(ValidationError):
            engine.validate(graph(node("h", "http.request")))

    async def test_nothing_runs_on_invalid_graph(self, engine, node_registry):
        calls = []
        _register(node_registry, "t.track", lambda i, p, c: calls.append(1))
        g = graph(node("a", "t.track"), node("b", "missing.type"))
        with pytest.raises(ValidationError):
            await engine.execute(g)
        assert calls == []
        assert engine.get_active_executions() == []
        assert engine.get_execution_history() == []

    def test_plan(self, engine, node_registry):
        _register(node_registry, "t.pass", lambda i, p, c: None, inputs=("in",))
        plan = engine.validate(graph(
            node("a", "t.pass"), node("b", "t.pass"), node("c", "t.pass"),
            edge("a", "out", "b", "in"), edge("a", "out", "c", "in"),
        ), {"in": 1})
        assert plan.entry_nodes == ["a"]
        assert sorted(plan.terminal_nodes) == ["b", "c"]
        assert plan.entry_bindings["a"] == {"in": 1}
        assert plan.entry_bindings["b"] == {}


@pytest.mark.unit
class TestExecution:
    """Scheduling, routing and results."""

    async def test_linear_pipeline(self, engine):
        g = graph(
            node("f", "data.filter", conditions=[{"field": "price", "operator": "greaterThan", "value": 10}]),
            node("t", "data.transform", expression="[item['name'] for item in data]"),
            edge("f", "matched", "t", "data"),
        )
        items = [{"name": "cheap", "price": 5}, {"name": "pricey", "price": 50}]
        ctx = await engine.execute(g, {"data": items})

        assert ctx.status == ExecutionStatus.COMPLETED
        assert ctx.result == {"t": {"result": ["pricey"]}}
        assert ctx.get_node_output("f", "unmatched") == [items[0]]
        assert ctx.progress()["percentage"] == 100

    async def test_http_404_completes_run(self, engine, node_registry):
        transport = httpx.MockTransport(lambda r: httpx.Response(404, json={"detail": "missing"}))
        node_registry.register("http.request", HttpRequestNode(transport=transport))
        g = graph(
            node("fetch", "http.request", url="https://api.example.com/items/9"),
            node("code", "data.transform", expression="data['status_code']"),
            edge("fetch", "response", "code", "data"),
        )
        ctx = await engine.execute(g)

        assert ctx.status == ExecutionStatus.COMPLETED
        assert ctx.get_node_output("fetch", "response")["success"] is False
        assert ctx.result == {"code": {"result": 404}}

    async def test_transform_timeout_fails_run(self, engine, node_registry, monkeypatch):
        def slow(expression, data, variables):
            time.sleep(0.3)

        monkeypatch.setattr(transform, "evaluate_expression", slow)
        after = []
        _register(node_registry, "t.after", lambda i, p, c: after.append(i), inputs=("in",))
        g = graph(
            node("slow", "data.transform", expression="data", timeout=20),
            node("next", "t.after"),
            edge("slow", "result", "next", "in"),
        )
        ctx = await engine.execute(g)

        assert ctx.status == ExecutionStatus.FAILED
        assert ctx.error["type"] == "NodeTimeoutError"
        assert ctx.error["node_id"] == "slow"
        assert after == []
        assert ctx.progress()["percentage"] < 100

    async def test_independent_entries_join(self, engine, node_registry):
        log = []
        _register(node_registry, "t.fast", _emit("fast", 0.01, log, "fast"))
        _register(node_registry, "t.slow", _emit("slow", 0.05, log, "slow"))
        _register(
            node_registry, "t.join",
            lambda i, p, c: {"out": f"{i['a']}+{i['b']}"},
            inputs=("a", "b"), required=("a", "b"),
        )
        g = graph(
            node("fast", "t.fast"), node("slow", "t.slow"), node("join", "t.join"),
            edge("fast", "out", "join", "a"), edge("slow", "out", "join", "b"),
        )
        ctx = await engine.execute(g)

        assert ctx.status == ExecutionStatus.COMPLETED
        assert ctx.result == {"join": {"out": "fast+slow"}}
        # Both entries start before either finishes
        assert set(log[:2]) == {"start-fast", "start-slow"}
        assert log[2:] == ["end-fast", "end-slow"]

    async def test_unmatched_branch_is_skipped(self, engine):
        g = graph(
            node("f", "data.filter", conditions=[{"field": "v", "operator": "greaterThan", "value": 0}]),
            node("m", "data.transform", expression="len(data)"),
            node("u", "data.transform", expression="len(data)"),
            node("u2", "data.transform", expression="data"),
            edge("f", "matched", "m", "data"),
            edge("f", "unmatched", "u", "data"),
            edge("u", "result", "u2", "data"),
        )
        ctx = await engine.execute(g, {"data": [{"v": 1}, {"v": 2}]})

        assert ctx.status == ExecutionStatus.COMPLETED
        assert ctx.executed_nodes == {"f", "m"}
        assert ctx.skipped_nodes == {"u", "u2"}
        assert ctx.result == {"m": {"result": 2}}
        assert ctx.progress()["percentage"] == 100

    async def test_optional_port_waits_for_all_sources(self, engine, node_registry):
        _register(node_registry, "t.fast", _emit("fast", 0.0))
        _register(node_registry, "t.slow", _emit("slow", 0.03))
        _register(
            node_registry, "t.merge",
            lambda i, p, c: {"out": sorted(i)},
            inputs=("a", "b"), required=("a",),
        )
        g = graph(
            node("fast", "t.fast"), node("slow", "t.slow"), node("merge", "t.merge"),
            edge("fast", "out", "merge", "a"), edge("slow", "out", "merge", "b"),
        )
        ctx = await engine.execute(g)
        assert ctx.result == {"merge": {"out": ["a", "b"]}}

    async def test_late_fan_in_value_is_discarded(self, engine, node_registry):
        runs = []
        _register(node_registry, "t.fast", _emit("fast", 0.0))
        _register(node_registry, "t.slow", _emit("slow", 0.05))
        _register(
            node_registry, "t.sink",
            lambda i, p, c: runs.append(i["x"]) or {"out": i["x"]},
            inputs=("x",), required=("x",),
        )
        g = graph(
            node("fast", "t.fast"), node("slow", "t.slow"), node("sink", "t.sink"),
            edge("fast", "out", "sink", "x"), edge("slow", "out", "sink", "x"),
        )
        ctx = await engine.execute(g)

        assert ctx.status == ExecutionStatus.COMPLETED
        assert runs == ["fast"]
        assert ctx.node_executions["sink"].inputs == {"x": "fast"}
        assert "slow" in ctx.executed_nodes

    async def test_result_contains_only_terminal_nodes(self, engine, node_registry):
        _register(node_registry, "t.src", _emit(1))
        _register(node_registry, "t.inc", lambda i, p, c: {"out": i["in"] + 1}, inputs=("in",), required=("in",))
        g = graph(
            node("a", "t.src"), node("b", "t.inc"), node("c", "t.inc"), node("d", "t.src"),
            edge("a", "out", "b", "in"), edge("b", "out", "c", "in"),
        )
        ctx = await engine.execute(g)
        assert ctx.result == {"c": {"out": 3}, "d": {"out": 1}}

    async def test_entry_inputs_from_input_data(self, engine):
        ctx = await engine.execute(
            graph(node("t", "data.transform", expression="data * 2")),
            {"data": 21},
        )
        assert ctx.result == {"t": {"result": 42}}

    async def test_variables_and_user_id(self, engine, node_registry):
        def func(inputs, parameters, context):
            previous = context.variables.set("count", context.variables.get("count", 0) + 1)
            return {"out": (previous, context.user_id)}

        _register(node_registry, "t.var", func)
        ctx = await engine.execute(graph(node("a", "t.var")), variables={"count": 5}, user_id="u-7")
        assert ctx.result == {"a": {"out": (5, "u-7")}}
        assert ctx.variables.get("count") == 6

    async def test_progress_only_hundred_when_completed(self, engine, node_registry):
        seen = []
        _register(node_registry, "t.src", _emit(1))
        _register(
            node_registry, "t.observe",
            lambda i, p, c: seen.append(c.progress()["percentage"]),
            inputs=("in",),
        )
        g = graph(node("a", "t.src"), node("b", "t.observe"), edge("a", "out", "b", "in"))
        ctx = await engine.execute(g)

        assert seen == [50]
        assert ctx.progress()["percentage"] == 100

    async def test_max_concurrency(self, node_registry):
        active = 0
        peak = 0

        async def func(inputs, parameters, context):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return {"out": True}

        _register(node_registry, "t.work", func)
        engine = WorkflowEngine(registry=node_registry, max_concurrency=2)
        ctx = await engine.execute(graph(*[node(f"n{i}", "t.work") for i in range(5)]))

        assert ctx.status == ExecutionStatus.COMPLETED
        assert peak == 2


@pytest.mark.unit
class TestFailureAndCancellation:
    """Fail-fast and cancellation semantics."""

    async def test_node_failure_fails_run(self, engine, node_registry):
        cancelled = []

        async def slow(inputs, parameters, context):
            try:
                await asyncio.sleep(5)
            except asyncio.CancelledError:
                cancelled.append(True)
                raise

        def broken(inputs, parameters, context):
            raise ValueError("bad record")

        _register(node_registry, "t.slow", slow)
        _register(node_registry, "t.broken", broken)
        g = graph(node("slow", "t.slow"), node("broken", "t.broken"))
        ctx = await engine.execute(g)

        assert ctx.status == ExecutionStatus.FAILED
        assert ctx.error["node_id"] == "broken"
        assert "bad record" in ctx.error["message"]
        assert cancelled == [True]
        assert "slow" not in ctx.node_executions

    async def test_undeclared_output_port_fails(self, engine, node_registry):
        _register(node_registry, "t.bad", lambda i, p, c: {"oops": 1})
        ctx = await engine.execute(graph(node("a", "t.bad")))
        assert ctx.status == ExecutionStatus.FAILED
        assert "undeclared output ports" in ctx.error["message"]

    async def test_cancel_execution(self, engine, node_registry):
        cancelled = []

        async def slow(inputs, parameters, context):
            try:
                await asyncio.sleep(5)
            except asyncio.CancelledError:
                cancelled.append(True)
                raise

        _register(node_registry, "t.slow", slow)
        ctx = await engine.start(graph(node("a", "t.slow")))
        await asyncio.sleep(0.02)

        assert await engine.cancel_execution(ctx.execution_id) is True
        await engine.wait(ctx.execution_id)

        assert ctx.status == ExecutionStatus.CANCELLED
        assert ctx.error["type"] == "Cancelled"
        assert cancelled == [True]
        assert await engine.cancel_execution(ctx.execution_id) is False
        assert await engine.cancel_execution("exec_unknown") is False

    async def test_cancel_without_cancelling_in_flight(self, node_registry):
        finished = []

        async def slow(inputs, parameters, context):
            await asyncio.sleep(0.05)
            finished.append(True)
            return {"out": 1}

        _register(node_registry, "t.slow", slow)
        engine = WorkflowEngine(registry=node_registry, cancel_in_flight=False)
        ctx = await engine.start(graph(node("a", "t.slow")))
        await asyncio.sleep(0.01)
        await engine.cancel_execution(ctx.execution_id)
        await engine.wait(ctx.execution_id)

        assert ctx.status == ExecutionStatus.CANCELLED
        assert finished == [True]
        assert ctx.node_executions == {}

    async def test_shutdown_cancels_active_runs(self, engine, node_registry):
        _register(node_registry, "t.slow", _emit(1, 5))
        ctx = await engine.start(graph(node("a", "t.slow")))
        await asyncio.sleep(0.01)
        await engine.shutdown()
        assert ctx.status == ExecutionStatus.CANCELLED
        assert engine.get_active_executions() == []

    async def test_cancel_from_node_executed_handler(self, engine):
        g = graph(
            node("f", "data.filter", conditions=[{"field": "v", "operator": "greaterThan", "value": 0}]),
            node("m", "data.transform", expression="len(data)"),
            node("u", "data.transform", expression="len(data)"),
            edge("f", "matched", "m", "data"),
            edge("f", "unmatched", "u", "data"),
        )

        async def cancel_after_filter(event):
            if event.node_id == "f":
                await engine.cancel_execution(event.execution_id)

        engine.events.subscribe(NodeExecuted, cancel_after_filter)
        with capture_logs() as logs:
            ctx = await engine.execute(g, {"data": [{"v": 1}]})

        assert ctx.status == ExecutionStatus.CANCELLED
        assert ctx.executed_nodes == {"f"}
        assert ctx.skipped_nodes == set()
        assert "Scheduler crashed" not in [log["event"] for log in logs]

    async def test_shutdown_resolves_pending_waiters(self, engine, node_registry):
        _register(node_registry, "t.slow", _emit(1, 5))
        ctx = await engine.start(graph(node("a", "t.slow")))
        waiter = asyncio.create_task(engine.wait(ctx.execution_id))
        await asyncio.sleep(0.01)

        await engine.shutdown()

        assert await waiter is ctx
        assert ctx.status == ExecutionStatus.CANCELLED


@pytest.mark.unit
class TestEventsAndHistory:
    """Lifecycle events and run bookkeeping."""

    async def test_events(self, engine, node_registry):
        seen = []
        for event_type in (ExecutionStarted, NodeExecuted, NodeFailed, ExecutionFinished):
            engine.events.subscribe(event_type, seen.append)

        _register(node_registry, "t.src", _emit(1))
        ctx = await engine.execute(graph(node("a", "t.src")))

        assert [type(e) for e in seen] == [ExecutionStarted, NodeExecuted, ExecutionFinished]
        assert seen[0].execution_id == ctx.execution_id
        assert seen[1].ports == ("out",)
        assert seen[2].status == "completed"

    async def test_failing_subscriber_does_not_fail_run(self, engine):
        def broken(event):
            raise RuntimeError("observer bug")

        for event_type in (ExecutionStarted, NodeExecuted, ExecutionFinished):
            engine.events.subscribe(event_type, broken)

        ctx = await engine.execute(graph(node("t", "data.transform", expression="data + 1")), {"data": 1})

        assert ctx.status == ExecutionStatus.COMPLETED
        assert ctx.result == {"t": {"result": 2}}

    async def test_failure_event(self, engine, node_registry):
        seen = []
        engine.events.subscribe(NodeFailed, seen.append)
        _register(node_registry, "t.broken", lambda i, p, c: 1 / 0)
        await engine.execute(graph(node("a", "t.broken")))
        assert [e.node_id for e in seen] == ["a"]
        assert "division by zero" in seen[0].error

    async def test_history(self, node_registry):
        _register(node_registry, "t.src", _emit(1))
        engine = WorkflowEngine(registry=node_registry, history_limit=2)
        runs = [await engine.execute(graph(node("a", "t.src"))) for _ in range(3)]

        history = engine.get_execution_history()
        assert [c.execution_id for c in history] == [runs[2].execution_id, runs[1].execution_id]
        assert engine.get_execution_status(runs[0].execution_id) is None
        assert engine.get_execution_status(runs[2].execution_id) is runs[2]
        assert await engine.wait(runs[1].execution_id) is runs[1]

    async def test_wait_unknown(self, engine):
        with pytest.raises(NotFoundError):
            await engine.wait("exec_missing")
