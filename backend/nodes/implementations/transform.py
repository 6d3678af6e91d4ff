"""Data Transform node implementation.

Runs user-supplied transformation logic against the ``data`` input and
emits the outcome on the ``result`` port. Two languages are supported:

- ``expression``: a single expression evaluated with simpleeval. Names
  ``data`` and ``variables`` are available plus a small whitelist of
  builtins. Runs in a worker thread raced against the deadline; on timeout
  the thread is abandoned.
- ``python``: a code block run in a separate interpreter process. The code
  sees ``data`` and ``variables`` and must assign ``result``. Its address
  space is capped by TRANSFORM_MAX_MEMORY_MB. On timeout or cancellation
  the process is killed.
"""

import asyncio
import json
import math
import os
import sys
import tempfile
from typing import Any, Callable, Dict, Optional

import structlog
from simpleeval import EvalWithCompoundTypes, InvalidExpression

from app.config import get_settings
from core.exceptions import ExecutionError, NodeTimeoutError
from nodes.base_node import BaseNode, NodeTypeDescriptor, ParameterSpec, PortSpec

logger = structlog.get_logger(__name__)

RESULT_MARKER = "__FLOWGRAPH_RESULT__"

EXPRESSION_FUNCTIONS = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "sum": sum,
    "round": round,
    "sorted": sorted,
    "any": any,
    "all": all,
    "ceil": math.ceil,
    "floor": math.floor,
    "sqrt": math.sqrt,
}


def evaluate_expression(expression: str, data: Any, variables: Dict[str, Any]) -> Any:
    """Evaluate a transform expression against data and a variables snapshot."""
    evaluator = EvalWithCompoundTypes(
        names={"data": data, "variables": variables},
        functions=EXPRESSION_FUNCTIONS,
    )
    return evaluator.eval(expression)


def _memory_limiter(max_memory_mb: int) -> Optional[Callable[[], None]]:
    """Child-process hook capping the address space of a python transform (POSIX only)."""
    if max_memory_mb <= 0 or sys.platform == "win32":
        return None

    def limit() -> None:
        import resource

        limit_bytes = max_memory_mb * 1024 * 1024
        resource.setrlimit(resource.RLIMIT_AS, (limit_bytes, limit_bytes))

    return limit


class DataTransformNode(BaseNode):
    """Transform the incoming data with an expression or a Python code block.

    Parameters:
        language: "expression" | "python" (default: expression)
        expression: Expression source, for language=expression
        code: Python source assigning ``result``, for language=python
        timeout: Execution budget in milliseconds (default: 5000)
    """

    descriptor = NodeTypeDescriptor(
        type="data.transform",
        display_name="Data Transform",
        description="Transform data with an expression or a Python code block",
        category="data",
        inputs=[PortSpec("data", "any", description="Data to transform")],
        outputs=[PortSpec("result", "any", description="Transformation result")],
        parameters=[
            ParameterSpec("language", "string", default="expression", options=["expression", "python"]),
            ParameterSpec("expression", "string", description="Expression evaluated against data"),
            ParameterSpec("code", "string", description="Python code that assigns result"),
            ParameterSpec("timeout", "number", default=5000, description="Timeout in milliseconds"),
        ],
    )

    def validate_parameters(self, parameters: Dict[str, Any]) -> None:
        language = parameters.get("language") or "expression"
        if language == "expression" and not parameters.get("expression"):
            raise ValueError("Missing required parameter: expression")
        if language == "python" and not parameters.get("code"):
            raise ValueError("Missing required parameter: code")
        timeout = parameters.get("timeout")
        if timeout is not None and timeout <= 0:
            raise ValueError("timeout must be positive")

    def _timeout_ms(self, parameters: Dict[str, Any]) -> float:
        settings = get_settings()
        timeout = parameters.get("timeout")
        if timeout is None:
            timeout = settings.TRANSFORM_DEFAULT_TIMEOUT_MS
        return min(float(timeout), float(settings.TRANSFORM_MAX_TIMEOUT_MS))

    async def execute(self, inputs, parameters, context) -> Dict[str, Any]:
        data = inputs.get("data")
        variables = context.variables.snapshot() if context is not None else {}
        timeout_ms = self._timeout_ms(parameters)

        if (parameters.get("language") or "expression") == "python":
            result = await self._run_python(parameters.get("code") or "", data, variables, timeout_ms)
        else:
            result = await self._run_expression(parameters.get("expression") or "", data, variables, timeout_ms)

        return {"result": result}

    async def _run_expression(self, expression: str, data: Any, variables: Dict[str, Any], timeout_ms: float) -> Any:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(evaluate_expression, expression, data, variables),
                timeout=timeout_ms / 1000,
            )
        except asyncio.TimeoutError as e:
            raise NodeTimeoutError(
                f"Transform timed out after {timeout_ms:g}ms",
                timeout_ms=timeout_ms,
            ) from e
        except (InvalidExpression, SyntaxError) as e:
            raise ExecutionError(f"Invalid transform expression: {e}", cause=e) from e

    async def _run_python(self, code: str, data: Any, variables: Dict[str, Any], timeout_ms: float) -> Any:
        try:
            script_content = self._build_script(code, data, variables)
        except (TypeError, ValueError) as e:
            raise ExecutionError(f"Transform input is not JSON serializable: {e}", cause=e) from e

        with tempfile.NamedTemporaryFile(mode="w", suffix=".py", delete=False) as f:
            f.write(script_content)
            script_path = f.name

        process = None
        try:
            process = await asyncio.create_subprocess_exec(
                sys.executable, script_path,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                preexec_fn=_memory_limiter(get_settings().TRANSFORM_MAX_MEMORY_MB),
            )
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=timeout_ms / 1000,
            )
        except asyncio.TimeoutError as e:
            await self._kill(process)
            raise NodeTimeoutError(
                f"Transform timed out after {timeout_ms:g}ms",
                timeout_ms=timeout_ms,
            ) from e
        except asyncio.CancelledError:
            await self._kill(process)
            raise
        finally:
            os.unlink(script_path)

        stdout_text = stdout.decode("utf-8", errors="replace")
        stderr_text = stderr.decode("utf-8", errors="replace").strip()

        if process.returncode != 0:
            raise ExecutionError(
                f"Transform script exited with code {process.returncode}: {stderr_text or 'no output'}"
            )

        for line in reversed(stdout_text.splitlines()):
            if line.startswith(RESULT_MARKER):
                return json.loads(line[len(RESULT_MARKER):])

        raise ExecutionError("Transform script produced no result")

    @staticmethod
    async def _kill(process) -> None:
        """Kill the transform process and reap it."""
        if process is None or process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()

    def _build_script(self, code: str, data: Any, variables: Dict[str, Any]) -> str:
        """Build a runnable script with injected data and variables."""
        payload = json.dumps({"data": data, "variables": variables})
        lines = [
            "import json",
            "import sys",
            "",
            "# Injected inputs",
            f"_inputs = json.loads({json.dumps(payload)})",
            "data = _inputs['data']",
            "variables = _inputs['variables']",
            "result = None",
            "",
            "# User code",
            code,
            "",
            f"print({RESULT_MARKER!r} + json.dumps(result, default=str))",
        ]
        return "\n".join(lines)


# Export for node registry
TRANSFORM_NODE_TYPES = {
    "data.transform": DataTransformNode,
}
