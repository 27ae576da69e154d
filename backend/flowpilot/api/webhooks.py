import hmac
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from flowpilot.config import get_settings
from flowpilot.errors import GraphIntegrityError, WorkflowNotFound
from flowpilot.schemas.workflow import WorkflowRunStarted
from flowpilot.services.dispatch import Dispatcher, get_dispatcher

router = APIRouter()


def verify_webhook_secret(
    x_webhook_secret: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
):
    """Require the shared secret when one is configured."""
    secret = get_settings().webhook_secret
    if not secret:
        return

    provided = x_webhook_secret
    if not provided and authorization and authorization.lower().startswith("bearer "):
        provided = authorization[7:]
    if not provided or not hmac.compare_digest(provided.encode(), secret.encode()):
        raise HTTPException(status_code=401, detail="Invalid webhook secret")


async def _read_inputs(request: Request) -> dict[str, Any]:
    body = await request.body()
    if not body:
        return {}
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Body must be JSON")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")
    return data


@router.post("/trigger", response_model=WorkflowRunStarted, dependencies=[Depends(verify_webhook_secret)])
async def trigger_workflow(
    request: Request,
    workflowId: str | None = None,
    name: str | None = None,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    """Start a workflow by id or name; the JSON body becomes its inputs."""
    identifier = workflowId or name
    if not identifier:
        raise HTTPException(status_code=400, detail="Missing workflowId or name")

    inputs = await _read_inputs(request)
    try:
        engine = await dispatcher.start_workflow(identifier, inputs=inputs, trigger_type="webhook")
    except WorkflowNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    except GraphIntegrityError as e:
        raise HTTPException(status_code=400, detail=e.message)

    return WorkflowRunStarted(run_id=engine.run_id)
