"""
Integration Call node: call any registered third-party service from a workflow.

Resolves the integration's ServiceClient through the Integration Registry
(with the run user's credentials) and delegates to
``call(operation, parameters)``.
"""

from typing import Any, Dict, Optional

import httpx

from core.exceptions import ExecutionError, NodeTimeoutError, NotFoundError, ServiceCallError, TransportError
from integrations.registry import IntegrationRegistry, get_integration_registry
from nodes.base_node import BaseNode, NodeTypeDescriptor, ParameterSpec, PortSpec


class IntegrationCallNode(BaseNode):
    """Make a call to a registered integration.

    Parameters:
        integration: Integration id (required)
        operation: Operation name from the integration's manifest (required)
        params: Static call parameters; the ``params`` input is merged over them
    """

    descriptor = NodeTypeDescriptor(
        type="integration.call",
        display_name="Integration Call",
        description="Call an operation of a connected third-party service",
        category="integrations",
        inputs=[PortSpec("params", "object", description="Call parameters, merged over the params parameter")],
        outputs=[PortSpec("result", "any", description="Service response")],
        parameters=[
            ParameterSpec("integration", "string", required=True, description="Integration id"),
            ParameterSpec("operation", "string", required=True, description="Operation name"),
            ParameterSpec("params", "object", default={}),
        ],
    )

    def __init__(self, registry: Optional[IntegrationRegistry] = None):
        self._registry = registry

    @property
    def registry(self) -> IntegrationRegistry:
        return self._registry or get_integration_registry()

    def validate_parameters(self, parameters: Dict[str, Any]) -> None:
        integration_id = parameters["integration"]
        if not self.registry.has(integration_id):
            raise ValueError(f"Unknown integration '{integration_id}'")

    async def execute(self, inputs, parameters, context) -> Dict[str, Any]:
        integration_id = parameters["integration"]
        operation = parameters["operation"]

        call_params = dict(parameters.get("params") or {})
        input_params = inputs.get("params")
        if input_params is not None:
            if not isinstance(input_params, dict):
                raise ExecutionError(f"params input must be an object, got {type(input_params).__name__}")
            call_params.update(input_params)

        user_id = getattr(context, "user_id", None)
        try:
            client = await self.registry.get_client(integration_id, user_id=user_id)
        except NotFoundError as e:
            raise ExecutionError(e.message, cause=e) from e

        try:
            result = await client.call(operation, call_params)
        except httpx.TimeoutException as e:
            raise NodeTimeoutError(f"{integration_id}.{operation} timed out", cause=e) from e
        except httpx.TransportError as e:
            raise TransportError(f"{integration_id}.{operation} failed: {e}", cause=e) from e
        except ServiceCallError as e:
            raise ExecutionError(f"{integration_id}.{operation} failed: {e.message}", cause=e) from e

        return {"result": result}


# Export for node registry
INTEGRATION_NODE_TYPES = {
    "integration.call": IntegrationCallNode,
}
