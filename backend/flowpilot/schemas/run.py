"""Persisted run records, shared by the in-memory and SQL run stores."""

from pydantic import BaseModel, field_validator
from uuid import UUID
from datetime import datetime
from typing import Any


class _Record(BaseModel):

    @field_validator("id", "workflow_id", "workflow_run_id", "flow_id", mode="before", check_fields=False)
    @classmethod
    def uuid_to_str(cls, v):
        if isinstance(v, UUID):
            return str(v)
        return v


class FlowRunRecord(_Record):
    id: str
    flow_id: str | None = None
    flow_name: str | None = None
    status: str
    logs: list[str] = []
    start_time: datetime
    end_time: datetime | None = None
    duration_ms: int | None = None
    error_message: str | None = None

    class Config:
        from_attributes = True


class WorkflowRunRecord(_Record):
    id: str
    workflow_id: str | None = None
    status: str
    trigger_type: str
    context_snapshot: dict[str, Any] | None = None
    start_time: datetime
    end_time: datetime | None = None
    duration_ms: int | None = None
    error_message: str | None = None

    class Config:
        from_attributes = True


class NodeExecutionRecord(_Record):
    id: str
    workflow_run_id: str
    node_id: str
    node_type: str
    sequence: int
    status: str
    start_time: datetime
    end_time: datetime | None = None
    duration_ms: int | None = None
    logs: list[str] = []
    result: dict[str, Any] | None = None
    error_message: str | None = None
    artifacts: list[str] = []

    class Config:
        from_attributes = True


class WorkflowRunDetail(BaseModel):
    run: WorkflowRunRecord
    executions: list[NodeExecutionRecord]
    definition: dict[str, Any] | None = None


class ScheduledJobRecord(_Record):
    id: str
    test_type: str
    target_identifier: str
    cron_schedule: str | None = None
    active: bool = True
    last_run_at: datetime | None = None
    last_run_status: str | None = None

    class Config:
        from_attributes = True


class StoredWorkflow(_Record):
    id: str
    name: str
    definition: dict[str, Any]

    class Config:
        from_attributes = True
