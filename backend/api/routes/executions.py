"""Workflow execution endpoints: run, inspect, cancel."""

from fastapi import APIRouter, Depends, Query
from fastapi import status as http_status

from api.schemas.execution import (
    ExecutionCreate,
    ExecutionListResponse,
    ExecutionResponse,
    ValidationRequest,
)
from app.dependencies import get_current_user_id, get_engine
from core.exceptions import ConflictError, NotFoundError
from workflow.engine import WorkflowEngine
from workflow.graph import WorkflowGraph

router = APIRouter(tags=["executions"])


@router.post("/", response_model=ExecutionResponse, status_code=http_status.HTTP_201_CREATED)
async def create_execution(
    body: ExecutionCreate,
    user_id: str = Depends(get_current_user_id),
    engine: WorkflowEngine = Depends(get_engine),
) -> dict:
    """
    Run a workflow.

    With ``wait`` (default) the response carries the terminal context;
    otherwise it returns as soon as the run is scheduled.
    Invalid graphs are rejected with 422 before anything runs.
    """
    graph = WorkflowGraph.from_dict(body.workflow.model_dump())
    context = await engine.start(
        graph,
        input_data=body.input_data,
        variables=body.variables,
        user_id=user_id,
    )
    if body.wait:
        context = await engine.wait(context.execution_id)
    return context.to_dict(include_nodes=True)


@router.post("/validate", summary="Validate a workflow without running it")
async def validate_workflow(
    body: ValidationRequest,
    engine: WorkflowEngine = Depends(get_engine),
) -> dict:
    graph = WorkflowGraph.from_dict(body.workflow.model_dump())
    plan = engine.validate(graph, body.input_data)
    return {"valid": True, "plan": plan.to_dict()}


@router.get("/", response_model=ExecutionListResponse)
async def list_executions(
    limit: int = Query(50, ge=1, le=500, description="Max history entries"),
    engine: WorkflowEngine = Depends(get_engine),
) -> dict:
    """List active runs and the most recent finished runs."""
    active = [ctx.to_dict() for ctx in engine.get_active_executions()]
    history = [ctx.to_dict() for ctx in engine.get_execution_history(limit)]
    return {"active": active, "history": history, "total": len(active) + len(history)}


@router.get("/{execution_id}", response_model=ExecutionResponse)
async def get_execution(
    execution_id: str,
    engine: WorkflowEngine = Depends(get_engine),
) -> dict:
    context = engine.get_execution_status(execution_id)
    if context is None:
        raise NotFoundError(f"Execution '{execution_id}' not found")
    return context.to_dict(include_nodes=True)


@router.post("/{execution_id}/cancel", response_model=ExecutionResponse)
async def cancel_execution(
    execution_id: str,
    engine: WorkflowEngine = Depends(get_engine),
) -> dict:
    """Cancel a running execution."""
    context = engine.get_execution_status(execution_id)
    if context is None:
        raise NotFoundError(f"Execution '{execution_id}' not found")
    if not await engine.cancel_execution(execution_id):
        raise ConflictError(f"Execution '{execution_id}' already {context.status.value}")
    return context.to_dict(include_nodes=True)
