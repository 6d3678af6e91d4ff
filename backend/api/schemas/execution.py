"""Execution request/response schemas."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class EdgeSchema(BaseModel):
    """Port-to-port connection between two nodes."""

    source: str = Field(description="Source node ID")
    source_port: str = Field(description="Output port on the source node")
    target: str = Field(description="Target node ID")
    target_port: str = Field(description="Input port on the target node")


class NodeSchema(BaseModel):
    """Node instance placed in a workflow."""

    id: str = Field(description="Unique node ID within the workflow")
    type: str = Field(description="Registered node type, e.g. data.filter")
    name: Optional[str] = Field(default=None, description="Display name")
    parameters: Dict[str, Any] = Field(default_factory=dict, description="Fixed node configuration")


class WorkflowSchema(BaseModel):
    """Workflow graph definition."""

    name: str = Field(default="workflow", description="Workflow name")
    nodes: List[NodeSchema] = Field(default_factory=list)
    edges: List[EdgeSchema] = Field(default_factory=list)


class ExecutionCreate(BaseModel):
    """Request to run a workflow."""

    workflow: WorkflowSchema = Field(description="Workflow graph to execute")
    input_data: Any = Field(default=None, description="Input payload; keys bind to unconnected input ports")
    variables: Dict[str, Any] = Field(default_factory=dict, description="Initial run variables")
    wait: bool = Field(default=True, description="Wait for the run to finish before responding")


class ValidationRequest(BaseModel):
    """Request to validate a workflow without running it."""

    workflow: WorkflowSchema
    input_data: Any = None


class ProgressResponse(BaseModel):
    total: int
    executed: int
    succeeded: int
    skipped: int
    percentage: int


class WorkflowSummary(BaseModel):
    name: str
    node_count: int


class ExecutionResponse(BaseModel):
    """Execution run information response."""

    execution_id: str = Field(description="Execution ID")
    workflow: WorkflowSummary
    status: str = Field(description="pending, running, completed, failed, cancelled")
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    duration: Optional[float] = Field(default=None, description="Duration in milliseconds")
    progress: ProgressResponse
    result: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    executed_nodes: Optional[List[str]] = None
    skipped_nodes: Optional[List[str]] = None
    node_executions: Optional[Dict[str, Any]] = None
    variables: Optional[Dict[str, Any]] = None


class ExecutionListResponse(BaseModel):
    """Active runs plus recent history."""

    active: List[ExecutionResponse]
    history: List[ExecutionResponse]
    total: int
