from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from flowpilot.errors import GraphIntegrityError, WorkflowNotFound
from flowpilot.services.dispatch import Dispatcher, get_dispatcher
from flowpilot.services.flow_loader import FlowNotFound, InvalidFlow
from flowpilot.services.scheduler import run_now, run_scheduled_job

router = APIRouter()


class RunNowRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    target_type: Literal["file", "workflow"] = Field(alias="targetType")
    target_identifier: str = Field(alias="targetIdentifier")
    trigger_type: Literal["manual", "scheduled", "webhook"] = Field(default="scheduled", alias="triggerType")


class RunNowResponse(BaseModel):
    type: str
    runId: str | None
    status: str
    success: bool


async def _run(coro):
    try:
        return await coro
    except (FlowNotFound, WorkflowNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (InvalidFlow, GraphIntegrityError) as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/run-now", response_model=RunNowResponse)
async def run_target_now(
    request: RunNowRequest,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    """Called by the external scheduler (or an operator) to run a target immediately."""
    return await _run(run_now(dispatcher, request.target_type, request.target_identifier, request.trigger_type))


@router.post("/{job_id}/run", response_model=RunNowResponse)
async def run_job(
    job_id: str,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    job = await dispatcher.store.get_scheduled_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Scheduled job not found")
    if not job.active:
        raise HTTPException(status_code=409, detail="Scheduled job is inactive")

    return await _run(run_scheduled_job(dispatcher, job))
