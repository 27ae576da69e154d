from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, model_validator

from flowpilot.schemas.flow import SuiteResult, SuiteSummary
from flowpilot.services.dispatch import Dispatcher, get_dispatcher
from flowpilot.services.flow_loader import FlowNotFound, InvalidFlow

router = APIRouter()


class SuiteRunRequest(BaseModel):
    files: list[str] = []
    tag: str | None = None
    concurrency: int | None = None

    @model_validator(mode='after')
    def validate_target(self):
        if not self.files and not self.tag:
            raise ValueError("Either files or tag must be provided")
        return self


@router.post("/run", response_model=SuiteResult)
async def run_suite(
    request: SuiteRunRequest,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    """Run flow files (listed, or every file carrying a tag) with a concurrency limit."""
    try:
        if request.files:
            flows = [await dispatcher.flow_loader.load_file(name) for name in request.files]
        else:
            flows = await dispatcher.flow_loader.flows_by_tag(request.tag)
    except FlowNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidFlow as e:
        raise HTTPException(status_code=400, detail=str(e))

    if not flows:
        return SuiteResult(results=[], summary=SuiteSummary(total=0, passed=0, failed=0))

    return await dispatcher.run_suite(flows, request.concurrency)
