from pydantic import BaseModel, ConfigDict
from typing import Literal

FlowStatus = Literal["passed", "failed", "aborted"]


class FlowResult(BaseModel):
    """Outcome of one Flow Runner invocation."""
    model_config = ConfigDict(frozen=True)

    success: bool
    status: FlowStatus
    logs: list[str]
    duration_ms: int
    error: str | None = None
    artifacts: list[str] = []
    run_id: str | None = None


class SuiteFlowResult(BaseModel):
    name: str
    success: bool
    status: str
    duration_ms: int = 0
    error: str | None = None


class SuiteSummary(BaseModel):
    total: int
    passed: int
    failed: int


class SuiteResult(BaseModel):
    results: list[SuiteFlowResult]
    summary: SuiteSummary
