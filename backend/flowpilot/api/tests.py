from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from flowpilot.schemas.flow import FlowResult
from flowpilot.schemas.step import FlowRunRequest
from flowpilot.services.dispatch import Dispatcher, get_dispatcher

router = APIRouter()


class StopRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    run_key: str | None = Field(default=None, alias="runKey")


class StopResponse(BaseModel):
    success: bool
    stopped: int
    message: str


@router.post("/run", response_model=FlowResult)
async def run_test(
    request: FlowRunRequest,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    """Run posted steps to completion. Step failures are reported in the result."""
    return await dispatcher.run_flow(request.steps, request.data, flow_name=request.flow_name)


@router.post("/stop", response_model=StopResponse)
async def stop_tests(
    request: StopRequest | None = None,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    """Stop one run by key, or every active run when no key is given."""
    if request and request.run_key:
        stopped = await dispatcher.registry.stop(request.run_key)
        return StopResponse(
            success=stopped,
            stopped=int(stopped),
            message="Run stopped" if stopped else f"No active run '{request.run_key}'",
        )

    count = await dispatcher.registry.stop_all()
    return StopResponse(success=True, stopped=count, message="All active tests stopped")


@router.get("/active")
async def active_runs(dispatcher: Dispatcher = Depends(get_dispatcher)):
    return {"runs": dispatcher.registry.active_keys()}
