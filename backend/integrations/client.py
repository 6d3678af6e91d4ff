"""
Service-call capability for third-party integrations.

The engine only ever sees ``ServiceClient.call(operation, parameters)``.
``HttpServiceClient`` is the generic implementation: it turns a manifest's
operation table into REST requests with credential injection.

Manifest example (``<integrations_dir>/crm/manifest.json``):

    {
        "id": "crm",
        "display_name": "Acme CRM",
        "base_url": "https://api.acme-crm.example/v2",
        "auth_type": "bearer",
        "operations": {
            "get_contact": {"method": "GET", "path": "/contacts/{contact_id}"},
            "create_contact": {"method": "POST", "path": "/contacts"}
        }
    }
"""

import base64
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import httpx
import structlog

from core.exceptions import ServiceCallError

logger = structlog.get_logger(__name__)

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


@runtime_checkable
class ServiceClient(Protocol):
    """Uniform capability the Integration Call node delegates to."""

    async def call(self, operation: str, parameters: Dict[str, Any]) -> Any:
        ...


@dataclass(frozen=True)
class OperationSpec:
    """One callable operation of an integration: an HTTP method and a path template."""

    method: str = "GET"
    path: str = "/"
    description: str = ""

    @property
    def path_params(self) -> list:
        return _PLACEHOLDER.findall(self.path)

    def to_dict(self) -> dict:
        return {"method": self.method, "path": self.path, "description": self.description}


@dataclass
class IntegrationManifest:
    """Declared metadata of an integration."""

    id: str
    display_name: str = ""
    description: str = ""
    category: str = "other"
    base_url: str = ""
    auth_type: str = "none"  # none, api_key, bearer, basic
    auth_header: str = "X-API-Key"
    operations: Dict[str, OperationSpec] = field(default_factory=dict)
    icon: Optional[str] = None

    def __post_init__(self):
        if not self.display_name:
            self.display_name = self.id
        self.base_url = self.base_url.rstrip("/")

    @classmethod
    def from_dict(cls, data: dict) -> "IntegrationManifest":
        operations = {
            name: OperationSpec(
                method=str(op.get("method", "GET")).upper(),
                path=op.get("path", "/"),
                description=op.get("description", ""),
            )
            for name, op in (data.get("operations") or {}).items()
        }
        return cls(
            id=data["id"],
            display_name=data.get("display_name") or data.get("name") or data["id"],
            description=data.get("description", ""),
            category=data.get("category", "other"),
            base_url=data.get("base_url", ""),
            auth_type=data.get("auth_type", "none"),
            auth_header=data.get("auth_header", "X-API-Key"),
            operations=operations,
            icon=data.get("icon"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "description": self.description,
            "category": self.category,
            "base_url": self.base_url,
            "auth_type": self.auth_type,
            "icon": self.icon,
            "operations": {name: op.to_dict() for name, op in self.operations.items()},
        }


class HttpServiceClient:
    """
    Generic REST client built from an integration manifest.

    - Path placeholders (``{contact_id}``) are filled from parameters
    - Remaining parameters go to the query string (GET/DELETE) or JSON body
    - Credentials are injected per the manifest's auth_type
    - Non-2xx responses raise ServiceCallError
    """

    def __init__(
        self,
        manifest: IntegrationManifest,
        credentials: Optional[Dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout_seconds: float = 30.0,
    ):
        self.manifest = manifest
        self.credentials = credentials or {}
        self.transport = transport
        self.timeout_seconds = timeout_seconds

    def _auth_headers(self) -> Dict[str, str]:
        auth_type = self.manifest.auth_type
        creds = self.credentials
        if auth_type == "api_key" and creds.get("api_key"):
            return {self.manifest.auth_header: creds["api_key"]}
        if auth_type == "bearer" and creds.get("token"):
            return {"Authorization": f"Bearer {creds['token']}"}
        if auth_type == "basic" and creds.get("username"):
            encoded = base64.b64encode(
                f"{creds['username']}:{creds.get('password', '')}".encode()
            ).decode()
            return {"Authorization": f"Basic {encoded}"}
        return {}

    def build_request(self, operation: str, parameters: Dict[str, Any]) -> Dict[str, Any]:
        spec = self.manifest.operations.get(operation)
        if spec is None:
            raise ServiceCallError(
                f"Integration '{self.manifest.id}' has no operation '{operation}'",
                status_code=400,
            )

        remaining = dict(parameters or {})
        path = spec.path
        for name in spec.path_params:
            if name not in remaining:
                raise ServiceCallError(
                    f"Operation '{operation}' requires parameter '{name}'",
                    status_code=400,
                )
            path = path.replace(f"{{{name}}}", str(remaining.pop(name)))

        request: Dict[str, Any] = {
            "method": spec.method,
            "url": f"{self.manifest.base_url}{path}",
            "headers": self._auth_headers(),
        }
        if spec.method in ("GET", "DELETE", "HEAD"):
            request["params"] = remaining
        elif remaining:
            request["json"] = remaining
        return request

    async def call(self, operation: str, parameters: Dict[str, Any]) -> Any:
        request = self.build_request(operation, parameters)
        start = time.monotonic()
        async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout_seconds) as client:
            response = await client.request(**request)

        logger.debug(
            "Integration call",
            integration=self.manifest.id,
            operation=operation,
            status_code=response.status_code,
            duration_ms=round((time.monotonic() - start) * 1000, 2),
        )

        try:
            body = response.json()
        except ValueError:
            body = response.text

        if not response.is_success:
            raise ServiceCallError(
                f"{self.manifest.display_name} {operation} failed: HTTP {response.status_code}",
                status_code=response.status_code,
                payload=body,
            )
        return body
