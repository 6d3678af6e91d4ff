"""HTTP Request node implementation.

Makes HTTP requests to external APIs/services.
Supports all methods, custom headers, auth, timeouts and
status validation.

An HTTP-level failure (non-2xx, or a status outside ``valid_status_codes``)
is a normal output with ``success: false``. Only transport failures
(timeout, DNS, connection refused) fail the node.
"""

import base64
import ipaddress
import json
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import httpx
import structlog

from app.config import get_settings
from core.exceptions import ExecutionError, NodeTimeoutError, TransportError
from nodes.base_node import BaseNode, NodeTypeDescriptor, ParameterSpec, PortSpec

logger = structlog.get_logger(__name__)

FORBIDDEN_PORTS = (9000, 5432, 6379)


def _is_private_ip(ip_str: str) -> bool:
    """Check if an IP address is private, loopback or reserved."""
    try:
        ip = ipaddress.ip_address(ip_str)
        return ip.is_private or ip.is_loopback or ip.is_reserved or ip.is_link_local
    except ValueError:
        return False


def validate_url_safety(url: str) -> None:
    """Validate URL for SSRF protection.

    Blocks:
    - Non-HTTP(S) schemes
    - localhost and private/loopback IP literals
    - Internal service ports

    Raises:
        ValueError: If URL is unsafe
    """
    parsed = urlparse(url)

    if parsed.scheme.lower() not in ("http", "https"):
        raise ValueError(f"Unsupported scheme: {parsed.scheme or '(none)'}. Only HTTP and HTTPS allowed.")

    hostname = parsed.hostname
    if not hostname:
        raise ValueError("URL must have a valid hostname")

    if hostname.lower() in ("localhost", "127.0.0.1", "::1"):
        raise ValueError("Connections to localhost are not allowed")

    # Domain names are not resolved here
    if _is_private_ip(hostname):
        raise ValueError(f"Connections to private IP {hostname} are not allowed")

    try:
        port = parsed.port
    except ValueError as e:
        raise ValueError(f"Invalid port in URL: {e}")
    if port in FORBIDDEN_PORTS:
        raise ValueError(f"Connections to internal port {port} are not allowed")


def apply_auth(headers: Dict[str, str], auth_config: Optional[Dict[str, Any]]) -> None:
    """Inject credentials into request headers ({"type": "bearer|basic|api_key", ...})."""
    if not auth_config:
        return
    auth_type = auth_config.get("type", "")
    try:
        if auth_type == "bearer":
            headers["Authorization"] = f"Bearer {auth_config['token']}"
        elif auth_type == "basic":
            creds = base64.b64encode(
                f"{auth_config['username']}:{auth_config['password']}".encode()
            ).decode()
            headers["Authorization"] = f"Basic {creds}"
        elif auth_type == "api_key":
            headers[auth_config.get("header", "X-API-Key")] = auth_config["key"]
        else:
            raise ExecutionError(f"Unsupported auth type: {auth_type!r}")
    except KeyError as e:
        raise ExecutionError(f"Auth config '{auth_type}' is missing {e}") from e


class HttpRequestNode(BaseNode):
    """Execute HTTP requests to external services.

    Parameters:
        url: Target URL (required)
        method: GET, POST, PUT, PATCH, DELETE, HEAD, OPTIONS (default: GET)
        headers: Dict of HTTP headers
        query: URL query parameters
        body: Request body (for POST/PUT/PATCH/DELETE), overridden by the body input
        body_type: "json" | "form" | "text" (default: json)
        auth: {"type": "bearer|basic|api_key", "token|username|key": "..."}
        timeout: Request timeout in milliseconds (default: 30000)
        follow_redirects: Whether to follow redirects (default: true)
        max_redirects: Redirect limit (default: 20)
        validate_status: Judge success against valid_status_codes
        valid_status_codes: Status codes counted as success
    """

    descriptor = NodeTypeDescriptor(
        type="http.request",
        display_name="HTTP Request",
        description="Make HTTP requests to APIs and web services",
        category="network",
        inputs=[PortSpec("body", "any", description="Request body, overrides the body parameter")],
        outputs=[PortSpec("response", "object", description="Status, headers and parsed body")],
        parameters=[
            ParameterSpec("url", "string", required=True, description="Target URL"),
            ParameterSpec(
                "method", "string", default="GET",
                options=["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"],
            ),
            ParameterSpec("headers", "object", default={}),
            ParameterSpec("query", "object", default={}),
            ParameterSpec("body", "any"),
            ParameterSpec("body_type", "string", default="json", options=["json", "form", "text"]),
            ParameterSpec("auth", "object"),
            ParameterSpec("timeout", "number", description="Timeout in milliseconds"),
            ParameterSpec("follow_redirects", "boolean", default=True),
            ParameterSpec("max_redirects", "integer", default=20),
            ParameterSpec("validate_status", "boolean", default=False),
            ParameterSpec("valid_status_codes", "array", default=[]),
        ],
    )

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.transport = transport

    def validate_parameters(self, parameters: Dict[str, Any]) -> None:
        timeout = parameters.get("timeout")
        if timeout is not None and timeout <= 0:
            raise ValueError("timeout must be positive")
        if get_settings().HTTP_BLOCK_PRIVATE_NETWORKS:
            validate_url_safety(parameters["url"])

    def _build_request(self, inputs: Dict[str, Any], parameters: Dict[str, Any]) -> Dict[str, Any]:
        url = parameters.get("url")
        if not url:
            raise ExecutionError("Missing required parameter: url")

        if get_settings().HTTP_BLOCK_PRIVATE_NETWORKS:
            try:
                validate_url_safety(url)
            except ValueError as e:
                raise ExecutionError(str(e), cause=e) from e

        method = (parameters.get("method") or "GET").upper()
        headers = {str(k): str(v) for k, v in (parameters.get("headers") or {}).items()}
        apply_auth(headers, parameters.get("auth"))

        kwargs: Dict[str, Any] = {
            "method": method,
            "url": url,
            "headers": headers,
            "params": parameters.get("query") or {},
        }

        body = inputs["body"] if "body" in inputs else parameters.get("body")
        if body is not None and method in ("POST", "PUT", "PATCH", "DELETE"):
            body_type = parameters.get("body_type") or "json"
            if body_type == "json":
                if isinstance(body, str):
                    try:
                        body = json.loads(body)
                    except json.JSONDecodeError as e:
                        raise ExecutionError(f"Request body is not valid JSON: {e}", cause=e) from e
                kwargs["json"] = body
            elif body_type == "form":
                kwargs["data"] = body
            else:
                kwargs["content"] = body if isinstance(body, (str, bytes)) else json.dumps(body)
        return kwargs

    async def execute(self, inputs, parameters, context) -> Dict[str, Any]:
        request_kwargs = self._build_request(inputs, parameters)
        timeout = parameters.get("timeout") or get_settings().HTTP_DEFAULT_TIMEOUT_MS
        max_redirects = parameters.get("max_redirects")

        try:
            async with httpx.AsyncClient(
                transport=self.transport,
                timeout=timeout / 1000,
                follow_redirects=bool(parameters.get("follow_redirects", True)),
                max_redirects=20 if max_redirects is None else max_redirects,
            ) as client:
                response = await client.request(**request_kwargs)
        except httpx.TimeoutException as e:
            raise NodeTimeoutError(
                f"Request to {request_kwargs['url']} timed out after {timeout:g}ms",
                timeout_ms=timeout,
                cause=e,
            ) from e
        except httpx.TooManyRedirects as e:
            raise TransportError(f"Too many redirects: {e}", cause=e) from e
        except httpx.TransportError as e:
            raise TransportError(
                f"Request to {request_kwargs['url']} failed: {e or type(e).__name__}",
                cause=e,
            ) from e

        return {"response": self._build_output(response, parameters)}

    def _build_output(self, response: httpx.Response, parameters: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response_data = response.json()
        except ValueError:
            response_data = response.text

        valid_codes = parameters.get("valid_status_codes") or []
        if parameters.get("validate_status") and valid_codes:
            success = response.status_code in valid_codes
        else:
            success = response.is_success

        error = None
        if not success:
            if valid_codes and parameters.get("validate_status"):
                error = f"Unexpected status code: {response.status_code} (expected {valid_codes})"
            else:
                error = f"HTTP {response.status_code}"

        try:
            elapsed_ms = response.elapsed.total_seconds() * 1000
        except RuntimeError:
            elapsed_ms = 0

        return {
            "status_code": response.status_code,
            "status_text": response.reason_phrase,
            "headers": dict(response.headers),
            "data": response_data,
            "url": str(response.url),
            "elapsed_ms": elapsed_ms,
            "success": success,
            "error": error,
        }


# Export for node registry
HTTP_NODE_TYPES = {
    "http.request": HttpRequestNode,
}
