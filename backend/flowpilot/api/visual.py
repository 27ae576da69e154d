from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import AliasChoices, BaseModel, Field

from flowpilot.services.visual import VisualComparator

router = APIRouter()


class VisualDiff(BaseModel):
    name: str
    run_id: str
    baseline: str
    actual: str
    diff: str


class VisualDecision(BaseModel):
    name: str
    action: Literal["approve", "reject"]
    # Omitted: approve takes the latest capture, reject discards all of them
    run_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("runId", "run_id"))


def get_comparator() -> VisualComparator:
    return VisualComparator()


@router.get("", response_model=list[VisualDiff])
async def list_diffs(comparator: VisualComparator = Depends(get_comparator)):
    """Mismatching captures awaiting review, one entry per run."""
    return comparator.list_diffs()


@router.post("")
async def decide(decision: VisualDecision, comparator: VisualComparator = Depends(get_comparator)):
    if decision.action == "approve":
        if not comparator.approve(decision.name, decision.run_id):
            raise HTTPException(status_code=404, detail=f"No pending capture for '{decision.name}'")
        return {"success": True, "message": f"Baseline updated for {decision.name}"}

    comparator.reject(decision.name, decision.run_id)
    return {"success": True, "message": f"Discarded capture for {decision.name}"}
