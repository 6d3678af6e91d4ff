"""Workflow Execution Engine: port-routed DAG scheduler.

Takes a workflow graph (nodes connected output-port -> input-port) and
runs it against input data:

- Validation before anything runs (types, ports, parameters, cycles,
  unsatisfied required inputs)
- Concurrent execution of independent nodes, optionally bounded
- Branching: only the output ports a node populates fire their edges;
  downstream nodes that can never receive input are skipped
- Fail-fast: the first node failure fails the run
- Cancellation of the run and of its in-flight nodes
- Typed lifecycle events and execution history

Readiness rules:

- A node is ready when every required input port holds a value and every
  edge-fed optional port either holds a value or has all its sources settled.
- Ports with no incoming edge bind to the same-named key of ``input_data``.
- A node is skipped when a required port's sources all settled without
  supplying it, or when it has incoming edges and none of them fired.
- Fan-in: a later value overwrites an earlier one until the node is
  dispatched; values arriving after dispatch are discarded.
"""

import asyncio
import contextlib
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Set

import structlog

from app.config import get_settings
from core.events import (
    EventBus,
    ExecutionFinished,
    ExecutionStarted,
    NodeExecuted,
    NodeFailed,
)
from core.exceptions import ExecutionError, NotFoundError, ValidationError
from nodes.base_node import BaseNode
from nodes.registry import NodeRegistry, get_node_registry
from workflow.context import ExecutionContext, ExecutionStatus, NodeExecution
from workflow.graph import Edge, WorkflowGraph

logger = structlog.get_logger(__name__)

_READY = "ready"
_WAITING = "waiting"
_DEAD = "dead"


# ─── Execution Plan ──────────────────────────────────────────

@dataclass
class ExecutionPlan:
    """A validated graph with every node resolved to its executor."""

    graph: WorkflowGraph
    executors: Dict[str, BaseNode]
    parameters: Dict[str, Dict[str, Any]]
    order: List[str]
    entry_bindings: Dict[str, Dict[str, Any]]
    incoming: Dict[str, Dict[str, List[Edge]]] = field(default_factory=dict)
    outgoing: Dict[str, Dict[str, List[Edge]]] = field(default_factory=dict)

    @property
    def entry_nodes(self) -> List[str]:
        return [nid for nid in self.order if not self.incoming[nid]]

    @property
    def terminal_nodes(self) -> List[str]:
        return [nid for nid in self.order if not self.outgoing[nid]]

    def sources(self, node_id: str, port: str) -> Set[str]:
        return {e.source for e in self.incoming[node_id].get(port, [])}

    def upstream(self, node_id: str) -> Set[str]:
        return {e.source for edges in self.incoming[node_id].values() for e in edges}

    def to_dict(self) -> dict:
        return {
            "name": self.graph.name,
            "node_count": len(self.order),
            "order": list(self.order),
            "entry_nodes": self.entry_nodes,
            "terminal_nodes": self.terminal_nodes,
        }


@dataclass
class _Run:
    context: ExecutionContext
    task: Optional[asyncio.Task] = None


class WorkflowEngine:
    """Main workflow execution engine.

    Architecture:
    - One asyncio task per in-flight node
    - asyncio.Semaphore bounds node concurrency per run (0 = unbounded)
    - A single scheduler coroutine per run consumes completions with
      asyncio.wait(FIRST_COMPLETED) and is the only writer of the context
      and routing state
    - Cancellation via context.cancel_event, which the scheduler waits on
      alongside the node tasks
    """

    def __init__(
        self,
        registry: Optional[NodeRegistry] = None,
        max_concurrency: Optional[int] = None,
        cancel_in_flight: Optional[bool] = None,
        history_limit: Optional[int] = None,
        event_bus: Optional[EventBus] = None,
    ):
        settings = get_settings()
        self._registry = registry
        self._max_concurrency = (
            settings.ENGINE_MAX_CONCURRENCY if max_concurrency is None else max_concurrency
        )
        self._cancel_in_flight = (
            settings.ENGINE_CANCEL_IN_FLIGHT if cancel_in_flight is None else cancel_in_flight
        )
        self._history_limit = (
            settings.EXECUTION_HISTORY_LIMIT if history_limit is None else history_limit
        )
        self.events = event_bus or EventBus()
        self._running: Dict[str, _Run] = {}
        self._history: "OrderedDict[str, ExecutionContext]" = OrderedDict()

    @property
    def registry(self) -> NodeRegistry:
        return self._registry or get_node_registry()

    # ── Validation ──

    def validate(self, graph: WorkflowGraph, input_data: Any = None) -> ExecutionPlan:
        """Check a graph against the registry and build its execution plan.

        Raises:
            ValidationError: on the first problem found; nothing is executed
        """
        graph.check_structure()
        registry = self.registry

        executors: Dict[str, BaseNode] = {}
        parameters: Dict[str, Dict[str, Any]] = {}
        for node in graph.nodes:
            executor = registry.get_executor(node.type)
            if executor is None:
                raise ValidationError(
                    f"Node '{node.id}' has unknown type '{node.type}'",
                    node_id=node.id,
                )
            values = executor.descriptor.validate_parameters(node.parameters, node_id=node.id)
            try:
                executor.validate_parameters(values)
            except (ValueError, TypeError) as e:
                raise ValidationError(
                    f"Node '{node.id}' ({node.type}) has invalid parameters: {e}",
                    node_id=node.id,
                ) from e
            executors[node.id] = executor
            parameters[node.id] = values

        incoming: Dict[str, Dict[str, List[Edge]]] = {nid: {} for nid in executors}
        outgoing: Dict[str, Dict[str, List[Edge]]] = {nid: {} for nid in executors}
        for edge in graph.edges:
            source = executors[edge.source].descriptor
            target = executors[edge.target].descriptor
            if source.output(edge.source_port) is None:
                raise ValidationError(
                    f"Edge {edge}: '{edge.source}' ({source.type}) has no output port '{edge.source_port}'",
                    node_id=edge.source,
                )
            if target.input(edge.target_port) is None:
                raise ValidationError(
                    f"Edge {edge}: '{edge.target}' ({target.type}) has no input port '{edge.target_port}'",
                    node_id=edge.target,
                )
            outgoing[edge.source].setdefault(edge.source_port, []).append(edge)
            incoming[edge.target].setdefault(edge.target_port, []).append(edge)

        entry_bindings: Dict[str, Dict[str, Any]] = {}
        for node in graph.nodes:
            descriptor = executors[node.id].descriptor
            bound: Dict[str, Any] = {}
            for port in descriptor.inputs:
                if port.name in incoming[node.id]:
                    continue
                if isinstance(input_data, Mapping) and port.name in input_data:
                    bound[port.name] = input_data[port.name]
                elif port.required:
                    raise ValidationError(
                        f"Node '{node.id}' required input '{port.name}' is not connected "
                        f"and not provided in input data",
                        node_id=node.id,
                    )
            entry_bindings[node.id] = bound

        return ExecutionPlan(
            graph=graph,
            executors=executors,
            parameters=parameters,
            order=graph.topological_order(),
            entry_bindings=entry_bindings,
            incoming=incoming,
            outgoing=outgoing,
        )

    # ── Run lifecycle ──

    async def start(
        self,
        graph: WorkflowGraph,
        input_data: Any = None,
        variables: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> ExecutionContext:
        """Validate and launch a run in the background.

        Raises:
            ValidationError: before any context is created
        """
        plan = self.validate(graph, input_data)
        context = ExecutionContext(graph, input_data=input_data, variables=variables, user_id=user_id)
        run = _Run(context=context)
        self._running[context.execution_id] = run
        run.task = asyncio.create_task(
            self._run(plan, context),
            name=f"workflow-run-{context.execution_id}",
        )
        return context

    async def wait(self, execution_id: str) -> ExecutionContext:
        """Wait for a run to reach a terminal status."""
        run = self._running.get(execution_id)
        if run is not None and run.task is not None:
            # asyncio.wait does not re-raise the run task's cancellation into waiters
            await asyncio.wait({run.task})
            return run.context
        context = self._history.get(execution_id)
        if context is None:
            raise NotFoundError(f"Execution '{execution_id}' not found")
        return context

    async def execute(
        self,
        graph: WorkflowGraph,
        input_data: Any = None,
        variables: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> ExecutionContext:
        """Run a workflow to completion.

        Node failures do not raise: the returned context is ``failed`` and
        carries the error. Only validation errors raise.
        """
        context = await self.start(graph, input_data, variables=variables, user_id=user_id)
        return await self.wait(context.execution_id)

    async def cancel_execution(self, execution_id: str) -> bool:
        """Cancel a running execution.

        Returns:
            True if cancelled, False if not found or already finished
        """
        run = self._running.get(execution_id)
        if run is None or run.context.is_terminal:
            return False
        run.context.cancel()
        logger.info("Execution cancellation requested", execution_id=execution_id)
        return True

    def get_execution_status(self, execution_id: str) -> Optional[ExecutionContext]:
        run = self._running.get(execution_id)
        if run is not None:
            return run.context
        return self._history.get(execution_id)

    def get_active_executions(self) -> List[ExecutionContext]:
        return [run.context for run in self._running.values()]

    def get_execution_history(self, limit: int = 50) -> List[ExecutionContext]:
        """Most recently finished runs first."""
        return list(reversed(self._history.values()))[:limit]

    async def shutdown(self) -> None:
        """Cancel every active run and wait for the schedulers to exit."""
        runs = list(self._running.values())
        for run in runs:
            if not run.context.is_terminal:
                run.context.cancel("Engine shutting down")
        tasks = [run.task for run in runs if run.task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Workflow engine shut down", cancelled_runs=len(tasks))

    # ── Scheduler ──

    async def _run(self, plan: ExecutionPlan, context: ExecutionContext) -> None:
        with structlog.contextvars.bound_contextvars(execution_id=context.execution_id):
            try:
                if not context.is_terminal:
                    context.start()
                    logger.info(
                        "Execution started",
                        workflow=plan.graph.name,
                        node_count=len(plan.order),
                    )
                    await self.events.publish(ExecutionStarted(
                        execution_id=context.execution_id,
                        workflow_name=plan.graph.name,
                        node_count=len(plan.order),
                    ))
                    await self._schedule(plan, context)
            except asyncio.CancelledError:
                if not context.is_terminal:
                    context.cancel("Execution task cancelled")
                raise
            except Exception as e:
                logger.exception("Scheduler crashed", error=str(e))
                if not context.is_terminal:
                    context.fail(e)
            finally:
                self._finish(context)
                logger.info(
                    "Execution finished",
                    status=context.status.value,
                    duration_ms=context.duration_ms,
                    progress=context.progress()["percentage"],
                )
                await self.events.publish(ExecutionFinished(
                    execution_id=context.execution_id,
                    status=context.status.value,
                    duration_ms=context.duration_ms,
                    error=(context.error or {}).get("message"),
                ))

    async def _schedule(self, plan: ExecutionPlan, context: ExecutionContext) -> None:
        semaphore = asyncio.Semaphore(self._max_concurrency) if self._max_concurrency > 0 else None
        inputs: Dict[str, Dict[str, Any]] = {nid: dict(b) for nid, b in plan.entry_bindings.items()}
        fed: Set[str] = set()
        settled: Set[str] = set()
        dispatched: Set[str] = set()
        in_flight: Dict[asyncio.Task, str] = {}
        ready: deque = deque()

        def settle_and_propagate(start: List[str]) -> None:
            """Re-evaluate nodes; skipped nodes cascade to their successors."""
            worklist = deque(start)
            while worklist and not context.is_terminal:
                nid = worklist.popleft()
                if nid in settled or nid in dispatched or nid in ready:
                    continue
                state = self._readiness(plan, nid, inputs[nid], fed, settled)
                if state == _READY:
                    ready.append(nid)
                elif state == _DEAD:
                    settled.add(nid)
                    context.mark_skipped(nid)
                    logger.info("Node skipped", node_id=nid, node_type=plan.graph.get_node(nid).type)
                    worklist.extend(plan.graph.successors(nid))

        settle_and_propagate(list(plan.order))

        cancel_waiter = asyncio.create_task(context.cancel_event.wait())
        try:
            while not context.is_terminal:
                while ready:
                    nid = ready.popleft()
                    dispatched.add(nid)
                    task = asyncio.create_task(
                        self._run_node(plan, context, nid, dict(inputs[nid]), semaphore),
                        name=f"node-{nid}",
                    )
                    in_flight[task] = nid

                if not in_flight:
                    break

                done, _ = await asyncio.wait(
                    [*in_flight, cancel_waiter],
                    return_when=asyncio.FIRST_COMPLETED,
                )

                for task in done:
                    if task is cancel_waiter:
                        continue
                    nid = in_flight.pop(task)
                    execution = task.result()
                    if context.is_terminal:
                        logger.info("Discarding node outcome", node_id=nid, status=context.status.value)
                        continue

                    context.record_node_execution(execution)
                    settled.add(nid)

                    if not execution.succeeded:
                        context.fail(execution.error)
                        await self.events.publish(NodeFailed(
                            execution_id=context.execution_id,
                            node_id=nid,
                            node_type=execution.node_type,
                            error=execution.error.get("message", ""),
                            duration_ms=execution.duration_ms,
                        ))
                        break

                    self._route(plan, nid, execution.outputs, inputs, fed, dispatched, settled)
                    await self.events.publish(NodeExecuted(
                        execution_id=context.execution_id,
                        node_id=nid,
                        node_type=execution.node_type,
                        duration_ms=execution.duration_ms,
                        ports=tuple(sorted(execution.outputs)),
                    ))
                    if context.is_terminal:
                        break
                    settle_and_propagate(plan.graph.successors(nid))

            if not context.is_terminal:
                unsettled = [nid for nid in plan.order if nid not in settled]
                for nid in unsettled:
                    logger.warning("Node never became ready", node_id=nid)
                    context.mark_skipped(nid)
                context.complete({
                    nid: context.node_executions[nid].outputs
                    for nid in plan.terminal_nodes
                    if nid in context.node_executions
                })
        finally:
            cancel_waiter.cancel()
            await self._drain(in_flight, context)

    async def _drain(self, in_flight: Dict[asyncio.Task, str], context: ExecutionContext) -> None:
        """Stop or await nodes still running after the run ended; outcomes are discarded."""
        if not in_flight:
            return
        if self._cancel_in_flight:
            for task in in_flight:
                task.cancel()
        logger.info(
            "Discarding in-flight nodes",
            nodes=sorted(in_flight.values()),
            cancelled=self._cancel_in_flight,
            status=context.status.value,
        )
        await asyncio.gather(*in_flight, return_exceptions=True)
        in_flight.clear()

    @staticmethod
    def _readiness(
        plan: ExecutionPlan,
        node_id: str,
        received: Dict[str, Any],
        fed: Set[str],
        settled: Set[str],
    ) -> str:
        descriptor = plan.executors[node_id].descriptor
        waiting = False
        for port in descriptor.required_inputs:
            if port in received:
                continue
            if plan.sources(node_id, port) <= settled:
                return _DEAD
            waiting = True
        if waiting:
            return _WAITING

        for port, edges in plan.incoming[node_id].items():
            if port not in received and not {e.source for e in edges} <= settled:
                return _WAITING

        if plan.incoming[node_id] and node_id not in fed:
            return _DEAD
        return _READY

    @staticmethod
    def _route(
        plan: ExecutionPlan,
        node_id: str,
        outputs: Dict[str, Any],
        inputs: Dict[str, Dict[str, Any]],
        fed: Set[str],
        dispatched: Set[str],
        settled: Set[str],
    ) -> None:
        """Send each populated output port's value along its edges."""
        for port, value in outputs.items():
            for edge in plan.outgoing[node_id].get(port, []):
                target = edge.target
                if target in dispatched or target in settled:
                    logger.warning("Discarding late fan-in value", edge=str(edge))
                    continue
                if edge.target_port in inputs[target]:
                    logger.debug("Fan-in value overwritten", edge=str(edge))
                inputs[target][edge.target_port] = value
                fed.add(target)

    async def _run_node(
        self,
        plan: ExecutionPlan,
        context: ExecutionContext,
        node_id: str,
        inputs: Dict[str, Any],
        semaphore: Optional[asyncio.Semaphore],
    ) -> NodeExecution:
        executor = plan.executors[node_id]
        async with semaphore if semaphore is not None else contextlib.nullcontext():
            started_at = datetime.now(timezone.utc)
            start = time.monotonic()
            try:
                outputs = await executor.run(inputs, plan.parameters[node_id], context, node_id=node_id)
            except ExecutionError as e:
                return NodeExecution(
                    node_id=node_id,
                    node_type=executor.node_type,
                    status="failed",
                    inputs=inputs,
                    error=e.to_dict(),
                    started_at=started_at,
                    completed_at=datetime.now(timezone.utc),
                    duration_ms=round((time.monotonic() - start) * 1000, 2),
                )
        return NodeExecution(
            node_id=node_id,
            node_type=executor.node_type,
            status="succeeded",
            inputs=inputs,
            outputs=outputs,
            started_at=started_at,
            completed_at=datetime.now(timezone.utc),
            duration_ms=round((time.monotonic() - start) * 1000, 2),
        )

    def _finish(self, context: ExecutionContext) -> None:
        self._running.pop(context.execution_id, None)
        self._history[context.execution_id] = context
        while len(self._history) > self._history_limit > 0:
            self._history.popitem(last=False)


# ─── Singleton ─────────────────────────────────────────────────

_engine: Optional[WorkflowEngine] = None


def get_workflow_engine() -> WorkflowEngine:
    """Get or create the singleton WorkflowEngine."""
    global _engine
    if _engine is None:
        _engine = WorkflowEngine()
    return _engine
