"""Workflow submission and status routes."""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import Dict, Any, List, Optional

from core.container import container
from core.logging import get_logger
from services.execution import (
    DagClient,
    DLQHandlerProtocol,
    JobNotFoundError,
    Workflow,
    WorkflowNotFoundError,
)

logger = get_logger(__name__)
router = APIRouter(prefix="/api/workflows", tags=["workflows"])


class JobDefinition(BaseModel):
    name: str = Field(min_length=1)
    klass: str = Field(min_length=1)
    after: List[str] = []
    queue: Optional[str] = None
    params: Dict[str, Any] = {}


class WorkflowCreateRequest(BaseModel):
    jobs: List[JobDefinition] = Field(min_length=1)
    start: bool = False


def _workflow_response(workflow: Workflow) -> Dict[str, Any]:
    return {
        "workflow_id": workflow.id,
        "status": workflow.status.value,
        "created_at": workflow.created_at,
        "jobs": [job.to_dict() for job in workflow.jobs.values()],
    }


@router.post("")
async def create_workflow(
    request: WorkflowCreateRequest,
    client: DagClient = Depends(lambda: container.client())
):
    """Persist a workflow and optionally enqueue its initial jobs."""
    settings = container.settings()
    registry = container.registry()
    unknown = sorted({job.klass for job in request.jobs if not registry.has(job.klass)})
    if unknown:
        raise HTTPException(
            status_code=422,
            detail=f"Unknown job classes {unknown}. Available classes: {registry.list()}"
        )

    workflow = Workflow.create(default_queue=settings.default_queue)
    try:
        for job in request.jobs:
            workflow.add_job(job.name, job.klass, after=job.after,
                             queue=job.queue, params=job.params)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    await client.create_workflow(workflow)
    enqueued: List[str] = []
    if request.start:
        enqueued = await client.start_workflow(workflow.id)

    status = await client.workflow_status(workflow.id)
    logger.info("Workflow submitted", workflow_id=workflow.id,
                jobs=len(workflow.jobs), started=request.start)
    return {"workflow_id": workflow.id, "status": status.value, "enqueued": enqueued}


@router.get("/dlq/entries")
async def list_dlq_entries(
    dlq: DLQHandlerProtocol = Depends(lambda: container.dlq())
):
    """Deliveries the worker gave up on, oldest first."""
    entries = await dlq.list_entries()
    return {
        "enabled": dlq.enabled,
        "entries": [entry.to_dict() for entry in entries],
    }


@router.post("/{workflow_id}/start")
async def start_workflow(
    workflow_id: str,
    client: DagClient = Depends(lambda: container.client())
):
    try:
        enqueued = await client.start_workflow(workflow_id)
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    status = await client.workflow_status(workflow_id)
    return {"workflow_id": workflow_id, "status": status.value, "enqueued": enqueued}


@router.get("/{workflow_id}")
async def get_workflow(
    workflow_id: str,
    client: DagClient = Depends(lambda: container.client())
):
    try:
        workflow = await client.find_workflow(workflow_id)
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _workflow_response(workflow)


@router.get("/{workflow_id}/jobs/{name}")
async def get_job(
    workflow_id: str,
    name: str,
    client: DagClient = Depends(lambda: container.client())
):
    try:
        job = await client.find_job(workflow_id, name)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return job.to_dict()
