from fastapi import APIRouter, Depends, HTTPException

from flowpilot.errors import GraphIntegrityError, WorkflowNotFound
from flowpilot.schemas.run import WorkflowRunDetail, WorkflowRunRecord
from flowpilot.schemas.workflow import WorkflowRunRequest, WorkflowRunStarted
from flowpilot.services.dispatch import Dispatcher, get_dispatcher

router = APIRouter()


@router.post("/{workflow_id}/run", response_model=WorkflowRunStarted)
async def run_workflow(
    workflow_id: str,
    request: WorkflowRunRequest | None = None,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    """Start a workflow run. Traversal continues in the background."""
    inputs = request.inputs if request else {}
    try:
        engine = await dispatcher.start_workflow(workflow_id, inputs=inputs, trigger_type="manual")
    except WorkflowNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    except GraphIntegrityError as e:
        raise HTTPException(status_code=400, detail=e.message)

    return WorkflowRunStarted(run_id=engine.run_id, message="Workflow started")


@router.get("/{workflow_id}/runs", response_model=list[WorkflowRunRecord])
async def list_workflow_runs(
    workflow_id: str,
    limit: int = 50,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    return await dispatcher.store.list_workflow_runs(workflow_id, limit=limit)


@router.get("/runs/{run_id}", response_model=WorkflowRunDetail)
async def get_workflow_run(
    run_id: str,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    """A run with its node executions and the workflow definition it ran."""
    run = await dispatcher.store.get_workflow_run(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")

    executions = await dispatcher.store.list_node_executions(run_id)
    definition = None
    if run.workflow_id:
        workflow = await dispatcher.store.get_workflow(run.workflow_id)
        definition = workflow.definition if workflow else None

    return WorkflowRunDetail(run=run, executions=executions, definition=definition)
