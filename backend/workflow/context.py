"""Per-run execution state.

ExecutionContext is created by the engine when a run starts and owned by
it for the run's lifetime. Nodes read prior node executions and use the
run-scoped VariableStore; only the engine records outcomes and changes
status. Once a terminal status is set the context is frozen.
"""

import asyncio
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Union

import structlog

from core.exceptions import ExecutionError, InvalidStateTransition
from workflow.graph import WorkflowGraph

logger = structlog.get_logger(__name__)

_MISSING = object()


# ─── Status ──────────────────────────────────────────────────

class ExecutionStatus(str, Enum):
    """Status of a workflow run."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED)


_TRANSITIONS = {
    ExecutionStatus.PENDING: {ExecutionStatus.RUNNING, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED},
    ExecutionStatus.RUNNING: {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED},
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ─── Node outcomes ───────────────────────────────────────────

@dataclass
class NodeExecution:
    """Recorded outcome of a single node."""
    node_id: str
    node_type: str
    status: str  # succeeded | failed
    inputs: Dict[str, Any] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: float = 0

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    def to_dict(self) -> dict:
        return {
            "node_id": self.node_id,
            "node_type": self.node_type,
            "status": self.status,
            "outputs": self.outputs,
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
        }


# ─── Variables ───────────────────────────────────────────────

class VariableStore:
    """Run-scoped key/value store shared by every node of a run.

    Writes are serialized by a lock. ``set`` returns the value it replaced,
    and ``compare_and_swap`` lets concurrent writers detect lost updates
    instead of silently overwriting each other.
    """

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = dict(initial or {})
        self._lock = threading.RLock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: str, value: Any) -> Any:
        """Set a variable; returns the previous value (None if unset)."""
        with self._lock:
            previous = self._data.get(key)
            self._data[key] = value
            return previous

    def compare_and_swap(self, key: str, expected: Any, value: Any) -> bool:
        """Set ``key`` to ``value`` only if it currently equals ``expected``.

        Pass ``expected=None`` to require the key to be unset.
        """
        with self._lock:
            current = self._data.get(key, _MISSING)
            if expected is None:
                if current is not _MISSING and current is not None:
                    return False
            elif current is _MISSING or current != expected:
                return False
            self._data[key] = value
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, _MISSING) is not _MISSING

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._data)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._data

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


# ─── Execution Context ────────────────────────────────────────

class ExecutionContext:
    """Mutable record of one workflow run.

    Holds status, timing, variables, per-node outcomes and the final
    result or error.
    """

    def __init__(
        self,
        graph: WorkflowGraph,
        input_data: Any = None,
        execution_id: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ):
        self.execution_id = execution_id or f"exec_{uuid.uuid4().hex}"
        self.graph = graph
        self.input_data = input_data
        self.user_id = user_id
        self.status = ExecutionStatus.PENDING
        self.start_time: Optional[datetime] = None
        self.end_time: Optional[datetime] = None
        self.variables = VariableStore(variables)
        self.executed_nodes: Set[str] = set()
        self.skipped_nodes: Set[str] = set()
        self.node_executions: Dict[str, NodeExecution] = {}
        self.result: Optional[Dict[str, Any]] = None
        self.error: Optional[Dict[str, Any]] = None
        self.cancel_event = asyncio.Event()

    # ── Status transitions ──

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def _transition(self, new_status: ExecutionStatus) -> None:
        allowed = _TRANSITIONS.get(self.status, set())
        if new_status not in allowed:
            raise InvalidStateTransition(
                f"Execution {self.execution_id} cannot go from {self.status.value} to {new_status.value}"
            )
        logger.debug(
            "Execution status changed",
            execution_id=self.execution_id,
            from_status=self.status.value,
            to_status=new_status.value,
        )
        self.status = new_status

    def start(self) -> None:
        self._transition(ExecutionStatus.RUNNING)
        self.start_time = _now()

    def complete(self, result: Dict[str, Any]) -> None:
        self._transition(ExecutionStatus.COMPLETED)
        self.result = result
        self.end_time = _now()

    def fail(self, error: Union[BaseException, str, Dict[str, Any]]) -> None:
        self._transition(ExecutionStatus.FAILED)
        self.error = _error_dict(error)
        self.end_time = _now()

    def cancel(self, reason: str = "Execution cancelled") -> None:
        self._transition(ExecutionStatus.CANCELLED)
        self.error = {"type": "Cancelled", "message": reason}
        self.end_time = _now()
        self.cancel_event.set()

    # ── Node bookkeeping ──

    def record_node_execution(self, execution: NodeExecution) -> None:
        """Record a settled node. Refused once the run is terminal."""
        if self.is_terminal:
            raise InvalidStateTransition(
                f"Execution {self.execution_id} is {self.status.value}; "
                f"cannot record node '{execution.node_id}'"
            )
        self.node_executions[execution.node_id] = execution
        self.executed_nodes.add(execution.node_id)

    def mark_skipped(self, node_id: str) -> None:
        if self.is_terminal:
            raise InvalidStateTransition(
                f"Execution {self.execution_id} is {self.status.value}; cannot skip node '{node_id}'"
            )
        self.skipped_nodes.add(node_id)

    def get_node_output(self, node_id: str, port: Optional[str] = None) -> Any:
        """Outputs of a prior node (all ports, or one port)."""
        execution = self.node_executions.get(node_id)
        if execution is None:
            return None
        return execution.outputs if port is None else execution.outputs.get(port)

    # ── Reporting ──

    @property
    def duration_ms(self) -> Optional[float]:
        if self.start_time is None:
            return None
        end = self.end_time or _now()
        return round((end - self.start_time).total_seconds() * 1000, 2)

    def progress(self) -> Dict[str, Any]:
        total = len(self.graph.nodes)
        succeeded = sum(1 for e in self.node_executions.values() if e.succeeded)
        skipped = len(self.skipped_nodes)
        percentage = (100 * (succeeded + skipped)) // total if total else 0
        if self.status != ExecutionStatus.COMPLETED:
            # 100 is reserved for completed runs
            percentage = min(percentage, 99)
        return {
            "total": total,
            "executed": len(self.executed_nodes),
            "succeeded": succeeded,
            "skipped": skipped,
            "percentage": percentage,
        }

    def to_dict(self, include_nodes: bool = False) -> dict:
        data = {
            "execution_id": self.execution_id,
            "workflow": {"name": self.graph.name, "node_count": len(self.graph.nodes)},
            "status": self.status.value,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration": self.duration_ms,
            "progress": self.progress(),
            "result": self.result,
            "error": self.error,
        }
        if include_nodes:
            data["executed_nodes"] = sorted(self.executed_nodes)
            data["skipped_nodes"] = sorted(self.skipped_nodes)
            data["node_executions"] = {
                nid: execution.to_dict() for nid, execution in self.node_executions.items()
            }
            data["variables"] = self.variables.snapshot()
        return data

    def __repr__(self) -> str:
        return f"<ExecutionContext {self.execution_id} {self.status.value}>"


def _error_dict(error: Union[BaseException, str, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(error, dict):
        return error
    if isinstance(error, ExecutionError):
        return error.to_dict()
    if isinstance(error, BaseException):
        return {"type": type(error).__name__, "message": str(error)}
    return {"type": "Error", "message": str(error)}
