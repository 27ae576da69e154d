"""Persistence for flow runs, workflow runs and node executions."""

import logging
import uuid
from datetime import datetime
from typing import Any, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flowpilot.models.flow import FlowRun
from flowpilot.models.scheduled_job import ScheduledJob
from flowpilot.models.workflow import NodeExecution, Workflow, WorkflowRun
from flowpilot.schemas.flow import FlowResult
from flowpilot.schemas.run import (
    FlowRunRecord,
    NodeExecutionRecord,
    ScheduledJobRecord,
    StoredWorkflow,
    WorkflowRunRecord,
)

logger = logging.getLogger(__name__)

FINAL_RUN_STATUSES = ("completed", "failed", "aborted")


def _duration_ms(start: datetime, end: datetime) -> int:
    return max(0, int((end - start).total_seconds() * 1000))


def _as_uuid(value: Any) -> Optional[uuid.UUID]:
    if value is None or isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class RunStore(Protocol):
    """Write-mostly log of runs plus point lookups by id."""

    async def create_flow_run(self, flow_id: str | None, flow_name: str | None) -> FlowRunRecord: ...

    async def finish_flow_run(self, run_id: str, result: FlowResult) -> None: ...

    async def get_flow_run(self, run_id: str) -> FlowRunRecord | None: ...

    async def get_workflow(self, identifier: str) -> StoredWorkflow | None: ...

    async def create_workflow_run(
        self, workflow_id: str | None, trigger_type: str, context_snapshot: dict | None
    ) -> WorkflowRunRecord: ...

    async def update_workflow_run(
        self,
        run_id: str,
        status: str,
        error_message: str | None = None,
        context_snapshot: dict | None = None,
    ) -> None: ...

    async def start_node_execution(
        self, run_id: str, node_id: str, node_type: str, sequence: int
    ) -> NodeExecutionRecord: ...

    async def finish_node_execution(
        self,
        execution_id: str,
        status: str,
        logs: list[str] | None = None,
        result: dict | None = None,
        error_message: str | None = None,
        artifacts: list[str] | None = None,
    ) -> None: ...

    async def get_workflow_run(self, run_id: str) -> WorkflowRunRecord | None: ...

    async def list_node_executions(self, run_id: str) -> list[NodeExecutionRecord]: ...

    async def list_workflow_runs(self, workflow_id: str, limit: int = 50) -> list[WorkflowRunRecord]: ...

    async def get_scheduled_job(self, job_id: str) -> ScheduledJobRecord | None: ...

    async def record_job_run(self, job_id: str, status: str) -> None: ...


class InMemoryRunStore:
    """
    Run store held in process memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self):
        self.flow_runs: dict[str, FlowRunRecord] = {}
        self.workflows: dict[str, StoredWorkflow] = {}
        self.workflow_runs: dict[str, WorkflowRunRecord] = {}
        self.node_executions: dict[str, NodeExecutionRecord] = {}
        self.scheduled_jobs: dict[str, ScheduledJobRecord] = {}

    def add_workflow(self, name: str, definition: dict, workflow_id: str | None = None) -> StoredWorkflow:
        workflow = StoredWorkflow(id=workflow_id or str(uuid.uuid4()), name=name, definition=definition)
        self.workflows[workflow.id] = workflow
        return workflow

    def add_scheduled_job(self, test_type: str, target_identifier: str, active: bool = True) -> ScheduledJobRecord:
        job = ScheduledJobRecord(
            id=str(uuid.uuid4()), test_type=test_type, target_identifier=target_identifier, active=active
        )
        self.scheduled_jobs[job.id] = job
        return job

    async def create_flow_run(self, flow_id, flow_name):
        record = FlowRunRecord(
            id=str(uuid.uuid4()),
            flow_id=flow_id,
            flow_name=flow_name,
            status="running",
            start_time=datetime.utcnow(),
        )
        self.flow_runs[record.id] = record
        return record

    async def finish_flow_run(self, run_id, result):
        record = self.flow_runs[run_id]
        record.status = result.status
        record.logs = list(result.logs)
        record.end_time = datetime.utcnow()
        record.duration_ms = result.duration_ms
        record.error_message = result.error

    async def get_flow_run(self, run_id):
        return self.flow_runs.get(run_id)

    async def get_workflow(self, identifier):
        if identifier in self.workflows:
            return self.workflows[identifier]
        for workflow in self.workflows.values():
            if workflow.name == identifier:
                return workflow
        return None

    async def create_workflow_run(self, workflow_id, trigger_type, context_snapshot):
        record = WorkflowRunRecord(
            id=str(uuid.uuid4()),
            workflow_id=workflow_id,
            status="pending",
            trigger_type=trigger_type,
            context_snapshot=context_snapshot,
            start_time=datetime.utcnow(),
        )
        self.workflow_runs[record.id] = record
        return record

    async def update_workflow_run(self, run_id, status, error_message=None, context_snapshot=None):
        record = self.workflow_runs[run_id]
        record.status = status
        if status == "running":
            record.start_time = datetime.utcnow()
        if error_message is not None:
            record.error_message = error_message
        if context_snapshot is not None:
            record.context_snapshot = context_snapshot
        if status in FINAL_RUN_STATUSES:
            record.end_time = datetime.utcnow()
            record.duration_ms = _duration_ms(record.start_time, record.end_time)

    async def start_node_execution(self, run_id, node_id, node_type, sequence):
        record = NodeExecutionRecord(
            id=str(uuid.uuid4()),
            workflow_run_id=run_id,
            node_id=node_id,
            node_type=node_type,
            sequence=sequence,
            status="running",
            start_time=datetime.utcnow(),
        )
        self.node_executions[record.id] = record
        return record

    async def finish_node_execution(
        self, execution_id, status, logs=None, result=None, error_message=None, artifacts=None
    ):
        record = self.node_executions[execution_id]
        if record.end_time is not None:
            raise RuntimeError(f"Node execution {execution_id} already finalized")
        record.status = status
        record.logs = list(logs or [])
        record.result = result
        record.error_message = error_message
        record.artifacts = list(artifacts or [])
        record.end_time = datetime.utcnow()
        record.duration_ms = _duration_ms(record.start_time, record.end_time)

    async def get_workflow_run(self, run_id):
        return self.workflow_runs.get(run_id)

    async def list_node_executions(self, run_id):
        executions = [e for e in self.node_executions.values() if e.workflow_run_id == run_id]
        return sorted(executions, key=lambda e: e.sequence)

    async def list_workflow_runs(self, workflow_id, limit=50):
        runs = [r for r in self.workflow_runs.values() if r.workflow_id == workflow_id]
        runs.sort(key=lambda r: r.start_time, reverse=True)
        return runs[:limit]

    async def get_scheduled_job(self, job_id):
        return self.scheduled_jobs.get(job_id)

    async def record_job_run(self, job_id, status):
        job = self.scheduled_jobs.get(job_id)
        if job is not None:
            job.last_run_at = datetime.utcnow()
            job.last_run_status = status


class SqlRunStore:
    """Run store backed by the SQLAlchemy models. One short session per call."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def create_flow_run(self, flow_id, flow_name):
        async with self.session_factory() as db:
            run = FlowRun(flow_id=_as_uuid(flow_id), flow_name=flow_name, status="running", logs=[])
            db.add(run)
            await db.commit()
            await db.refresh(run)
            return FlowRunRecord.model_validate(run)

    async def finish_flow_run(self, run_id, result):
        async with self.session_factory() as db:
            run = await db.get(FlowRun, _as_uuid(run_id))
            if run is None:
                logger.warning("Flow run %s vanished before it finished", run_id)
                return
            run.status = result.status
            run.logs = list(result.logs)
            run.end_time = datetime.utcnow()
            run.duration_ms = result.duration_ms
            run.error_message = result.error
            await db.commit()

    async def get_flow_run(self, run_id):
        key = _as_uuid(run_id)
        if key is None:
            return None
        async with self.session_factory() as db:
            run = await db.get(FlowRun, key)
            return FlowRunRecord.model_validate(run) if run else None

    async def get_workflow(self, identifier):
        key = _as_uuid(identifier)
        async with self.session_factory() as db:
            if key is not None:
                workflow = await db.get(Workflow, key)
            else:
                result = await db.execute(select(Workflow).where(Workflow.name == identifier))
                workflow = result.scalar_one_or_none()
            return StoredWorkflow.model_validate(workflow) if workflow else None

    async def create_workflow_run(self, workflow_id, trigger_type, context_snapshot):
        async with self.session_factory() as db:
            run = WorkflowRun(
                workflow_id=_as_uuid(workflow_id),
                status="pending",
                trigger_type=trigger_type,
                context_snapshot=context_snapshot,
            )
            db.add(run)
            await db.commit()
            await db.refresh(run)
            return WorkflowRunRecord.model_validate(run)

    async def update_workflow_run(self, run_id, status, error_message=None, context_snapshot=None):
        async with self.session_factory() as db:
            run = await db.get(WorkflowRun, _as_uuid(run_id))
            if run is None:
                logger.warning("Workflow run %s not found for status %s", run_id, status)
                return
            run.status = status
            if status == "running":
                run.start_time = datetime.utcnow()
            if error_message is not None:
                run.error_message = error_message
            if context_snapshot is not None:
                run.context_snapshot = context_snapshot
            if status in FINAL_RUN_STATUSES:
                run.end_time = datetime.utcnow()
                run.duration_ms = _duration_ms(run.start_time, run.end_time)
            await db.commit()

    async def start_node_execution(self, run_id, node_id, node_type, sequence):
        async with self.session_factory() as db:
            execution = NodeExecution(
                workflow_run_id=_as_uuid(run_id),
                node_id=node_id,
                node_type=node_type,
                sequence=sequence,
                status="running",
                logs=[],
                artifacts=[],
            )
            db.add(execution)
            await db.commit()
            await db.refresh(execution)
            return NodeExecutionRecord.model_validate(execution)

    async def finish_node_execution(
        self, execution_id, status, logs=None, result=None, error_message=None, artifacts=None
    ):
        async with self.session_factory() as db:
            execution = await db.get(NodeExecution, _as_uuid(execution_id))
            if execution is None:
                logger.warning("Node execution %s not found", execution_id)
                return
            if execution.end_time is not None:
                raise RuntimeError(f"Node execution {execution_id} already finalized")
            execution.status = status
            execution.logs = list(logs or [])
            execution.result = result
            execution.error_message = error_message
            execution.artifacts = list(artifacts or [])
            execution.end_time = datetime.utcnow()
            execution.duration_ms = _duration_ms(execution.start_time, execution.end_time)
            await db.commit()

    async def get_workflow_run(self, run_id):
        key = _as_uuid(run_id)
        if key is None:
            return None
        async with self.session_factory() as db:
            run = await db.get(WorkflowRun, key)
            return WorkflowRunRecord.model_validate(run) if run else None

    async def list_node_executions(self, run_id):
        key = _as_uuid(run_id)
        if key is None:
            return []
        async with self.session_factory() as db:
            result = await db.execute(
                select(NodeExecution)
                .where(NodeExecution.workflow_run_id == key)
                .order_by(NodeExecution.sequence)
            )
            return [NodeExecutionRecord.model_validate(e) for e in result.scalars().all()]

    async def list_workflow_runs(self, workflow_id, limit=50):
        key = _as_uuid(workflow_id)
        if key is None:
            return []
        async with self.session_factory() as db:
            result = await db.execute(
                select(WorkflowRun)
                .where(WorkflowRun.workflow_id == key)
                .order_by(WorkflowRun.start_time.desc())
                .limit(limit)
            )
            return [WorkflowRunRecord.model_validate(r) for r in result.scalars().all()]

    async def get_scheduled_job(self, job_id):
        key = _as_uuid(job_id)
        if key is None:
            return None
        async with self.session_factory() as db:
            job = await db.get(ScheduledJob, key)
            return ScheduledJobRecord.model_validate(job) if job else None

    async def record_job_run(self, job_id, status):
        async with self.session_factory() as db:
            job = await db.get(ScheduledJob, _as_uuid(job_id))
            if job is None:
                return
            job.last_run_at = datetime.utcnow()
            job.last_run_status = status
            await db.commit()
