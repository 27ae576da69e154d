"""Trigger glue for the external scheduler.

Cron evaluation belongs to whatever calls ``run_now``; this module only turns
a job target into a flow run or a workflow run.
"""

import logging
from typing import Optional

from flowpilot.schemas.run import ScheduledJobRecord
from flowpilot.services.dispatch import Dispatcher

logger = logging.getLogger(__name__)

TARGET_TYPES = ("file", "workflow")


async def run_now(
    dispatcher: Dispatcher,
    target_type: str,
    target_identifier: str,
    trigger_type: str = "scheduled",
) -> dict:
    """
    Run a target immediately.

    ``file`` targets name a flow file under tests_dir (or a stored flow id)
    and run to completion. ``workflow`` targets are a workflow id or name;
    the run is started in the background and reported as running.
    """
    if target_type == "file":
        flow = await dispatcher.flow_loader.load(target_identifier)
        result = await dispatcher.run_flow(flow.steps, flow_id=flow.flow_id, flow_name=flow.name)
        return {
            "type": "file",
            "runId": result.run_id,
            "status": result.status,
            "success": result.success,
        }

    if target_type == "workflow":
        engine = await dispatcher.start_workflow(target_identifier, trigger_type=trigger_type)
        return {
            "type": "workflow",
            "runId": engine.run_id,
            "status": "running",
            "success": True,
        }

    raise ValueError(f"Unknown target type '{target_type}'. Use one of: {', '.join(TARGET_TYPES)}")


async def run_scheduled_job(dispatcher: Dispatcher, job: ScheduledJobRecord) -> Optional[dict]:
    """Run one scheduled job. Inactive jobs are skipped and return None."""
    if not job.active:
        logger.info("Skipping inactive job %s", job.id)
        return None

    logger.info("Running job %s: %s %s", job.id, job.test_type, job.target_identifier)
    try:
        outcome = await run_now(dispatcher, job.test_type, job.target_identifier, trigger_type="scheduled")
    except Exception as e:
        logger.error("Job %s failed to start: %s", job.id, e)
        await dispatcher.store.record_job_run(job.id, "failed")
        raise

    await dispatcher.store.record_job_run(job.id, outcome["status"])
    return outcome
