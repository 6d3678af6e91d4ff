"""
Base node contract for all workflow node implementations.

Every node type (data transform, filter, HTTP request, integration call, ...)
must inherit from BaseNode and implement the execute() method, or be a plain
callable wrapped by FunctionNode.

Contract:
    execute(inputs, parameters, context) -> outputs

- inputs: declared input-port name -> value routed to it
- parameters: the node instance's fixed configuration, already validated
- context: the run's ExecutionContext (variables, prior node executions)
- outputs: declared output-port name -> value. Ports left out are not
  propagated downstream; that is how a node picks a branch.
"""

import asyncio
import inspect
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional

import structlog
from pydantic import ConfigDict, Field, create_model
from pydantic import ValidationError as PydanticValidationError

from core.exceptions import ExecutionError, NodeTimeoutError, ValidationError

if TYPE_CHECKING:
    from workflow.context import ExecutionContext

logger = structlog.get_logger(__name__)

PARAMETER_TYPES: Dict[str, Any] = {
    "string": str,
    "number": float,
    "integer": int,
    "boolean": bool,
    "object": Dict[str, Any],
    "array": List[Any],
    "any": Any,
}


@dataclass(frozen=True)
class PortSpec:
    """A named input or output slot on a node."""

    name: str
    type: str = "any"
    required: bool = False
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "required": self.required,
            "description": self.description,
        }


@dataclass(frozen=True)
class ParameterSpec:
    """A named configuration value, fixed per node instance."""

    name: str
    type: str = "any"
    default: Any = None
    required: bool = False
    description: str = ""
    options: Optional[List[Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "default": self.default,
            "required": self.required,
            "description": self.description,
            "options": self.options,
        }


@dataclass
class NodeTypeDescriptor:
    """Static description of a node type: ports, parameters, display info."""

    type: str
    display_name: str = ""
    description: str = ""
    category: str = "general"
    inputs: List[PortSpec] = field(default_factory=list)
    outputs: List[PortSpec] = field(default_factory=list)
    parameters: List[ParameterSpec] = field(default_factory=list)

    def __post_init__(self):
        if not self.display_name:
            self.display_name = self.type
        self._model = None

    def input(self, name: str) -> Optional[PortSpec]:
        return next((p for p in self.inputs if p.name == name), None)

    def output(self, name: str) -> Optional[PortSpec]:
        return next((p for p in self.outputs if p.name == name), None)

    @property
    def required_inputs(self) -> List[str]:
        return [p.name for p in self.inputs if p.required]

    def parameter_model(self):
        """Build (once) the pydantic model used to validate instance parameters."""
        if self._model is None:
            fields: Dict[str, Any] = {}
            for spec in self.parameters:
                annotation = PARAMETER_TYPES.get(spec.type, Any)
                if spec.required:
                    fields[spec.name] = (annotation, Field(..., description=spec.description))
                else:
                    fields[spec.name] = (
                        Optional[annotation],
                        Field(default=spec.default, description=spec.description),
                    )
            model_name = "".join(part.title() for part in self.type.replace("-", ".").split(".")) + "Parameters"
            self._model = create_model(
                model_name,
                __config__=ConfigDict(extra="allow"),
                **fields,
            )
        return self._model

    def validate_parameters(self, parameters: Optional[Mapping[str, Any]], node_id: Optional[str] = None) -> Dict[str, Any]:
        """Validate raw parameters and fill in defaults.

        Raises:
            ValidationError: listing every offending parameter
        """
        try:
            validated = self.parameter_model().model_validate(dict(parameters or {}))
        except PydanticValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise ValidationError(
                f"Node '{node_id}' ({self.type}) has invalid parameters: {problems}",
                node_id=node_id,
            ) from e

        values = validated.model_dump()
        for spec in self.parameters:
            if spec.options and values.get(spec.name) is not None and values[spec.name] not in spec.options:
                raise ValidationError(
                    f"Node '{node_id}' ({self.type}) parameter '{spec.name}' must be one of {spec.options}",
                    node_id=node_id,
                )
        return values

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "display_name": self.display_name,
            "description": self.description,
            "category": self.category,
            "inputs": [p.to_dict() for p in self.inputs],
            "outputs": [p.to_dict() for p in self.outputs],
            "parameters": [p.to_dict() for p in self.parameters],
        }


class BaseNode(ABC):
    """
    Abstract base class for all node implementations.

    Subclasses must define:
    - descriptor (class attribute) with ports and parameter schema
    - execute(inputs, parameters, context) -> outputs
    """

    descriptor: NodeTypeDescriptor = NodeTypeDescriptor(type="base")

    @property
    def node_type(self) -> str:
        return self.descriptor.type

    @abstractmethod
    async def execute(
        self,
        inputs: Dict[str, Any],
        parameters: Dict[str, Any],
        context: "ExecutionContext",
    ) -> Dict[str, Any]:
        """
        Execute the node.

        Args:
            inputs: Values routed to the declared input ports
            parameters: Validated instance parameters
            context: Execution context of the current run

        Returns:
            Mapping of output-port name to value, for the ports to activate

        Raises:
            ExecutionError: on invalid inputs or a failed dependency call
        """

    def validate_parameters(self, parameters: Dict[str, Any]) -> None:
        """
        Extra validation run at graph-validation time, after schema checks.

        Override to reject configurations that can be detected before the
        run starts. Raise ValueError with a readable message.
        """

    async def run(
        self,
        inputs: Dict[str, Any],
        parameters: Dict[str, Any],
        context: "ExecutionContext",
        node_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Run the node with timing, logging and error normalization.

        This is the entry point called by the workflow engine. Every failure
        leaves here as an ExecutionError (or subclass).
        """
        log = logger.bind(node_id=node_id, node_type=self.node_type)
        start = time.monotonic()
        log.info("Node starting")
        try:
            outputs = await self.execute(inputs, parameters, context)
            outputs = self._check_outputs(outputs, node_id)
        except asyncio.CancelledError:
            log.info("Node cancelled", duration_ms=round((time.monotonic() - start) * 1000, 2))
            raise
        except ExecutionError as e:
            e.node_id = e.node_id or node_id
            e.node_type = e.node_type or self.node_type
            log.error(
                "Node failed",
                error=e.message,
                error_type=type(e).__name__,
                duration_ms=round((time.monotonic() - start) * 1000, 2),
            )
            raise
        except TimeoutError as e:
            log.error("Node timed out", duration_ms=round((time.monotonic() - start) * 1000, 2))
            raise NodeTimeoutError(
                f"Node '{node_id}' timed out: {e}" if str(e) else f"Node '{node_id}' timed out",
                node_id=node_id,
                node_type=self.node_type,
                cause=e,
            ) from e
        except Exception as e:
            log.error(
                "Node failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_ms=round((time.monotonic() - start) * 1000, 2),
            )
            raise ExecutionError(
                f"Node '{node_id}' ({self.node_type}) failed: {e}",
                node_id=node_id,
                node_type=self.node_type,
                cause=e,
            ) from e

        log.info(
            "Node completed",
            ports=sorted(outputs.keys()),
            duration_ms=round((time.monotonic() - start) * 1000, 2),
        )
        return outputs

    def _check_outputs(self, outputs: Any, node_id: Optional[str]) -> Dict[str, Any]:
        if outputs is None:
            return {}
        if not isinstance(outputs, Mapping):
            raise ExecutionError(
                f"Node '{node_id}' ({self.node_type}) returned {type(outputs).__name__}, expected a mapping of output ports",
                node_id=node_id,
                node_type=self.node_type,
            )
        declared = {p.name for p in self.descriptor.outputs}
        unknown = [k for k in outputs if k not in declared]
        if unknown:
            raise ExecutionError(
                f"Node '{node_id}' ({self.node_type}) populated undeclared output ports: {sorted(unknown)}",
                node_id=node_id,
                node_type=self.node_type,
            )
        return dict(outputs)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.node_type}>"


class FunctionNode(BaseNode):
    """Adapts a plain callable (sync or async) to the node contract."""

    def __init__(self, func: Callable[..., Any], descriptor: NodeTypeDescriptor):
        self.func = func
        self.descriptor = descriptor

    async def execute(self, inputs, parameters, context) -> Dict[str, Any]:
        result = self.func(inputs, parameters, context)
        if inspect.isawaitable(result):
            result = await result
        return result


def accepts_node_signature(func: Callable[..., Any]) -> bool:
    """Whether func can be called as func(inputs, parameters, context)."""
    if not callable(func):
        return False
    try:
        inspect.signature(func).bind(None, None, None)
    except (TypeError, ValueError):
        return False
    return True
