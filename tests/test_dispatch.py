import asyncio
import json

import pytest

from flowpilot.errors import GraphIntegrityError, WorkflowNotFound
from flowpilot.schemas.flow import FlowResult
from flowpilot.schemas.step import Step
from flowpilot.services.datasets import DatasetProvider
from flowpilot.services.dispatch import Dispatcher
from flowpilot.services.flow_loader import FlowLoader, FlowNotFound, LoadedFlow
from flowpilot.services.scheduler import run_now, run_scheduled_job

from conftest import EXAMPLE_URL

PASSING = [{"action": "goto", "value": EXAMPLE_URL}, {"action": "assertion", "value": "Example Domain"}]
FAILING = [{"action": "goto", "value": EXAMPLE_URL}, {"action": "assertion", "value": "Nope"}]

WORKFLOW = {
    "nodes": [
        {"id": "s", "type": "start", "data": {}},
        {"id": "t", "type": "test", "data": {"steps": PASSING}},
        {"id": "e", "type": "end", "data": {}},
    ],
    "edges": [{"source": "s", "target": "t"}, {"source": "t", "target": "e"}],
}


@pytest.fixture
def dispatcher(store, registry, runner_factory, tmp_path):
    return Dispatcher(
        store,
        runner_factory=runner_factory,
        flow_loader=FlowLoader(tmp_path),
        datasets=DatasetProvider(tmp_path),
        registry=registry,
    )


def steps_of(raw):
    return [Step.model_validate(s) for s in raw]


async def wait_for_run(store, run_id):
    async def poll():
        while (await store.get_workflow_run(run_id)).status in ("pending", "running"):
            await asyncio.sleep(0.01)
        return await store.get_workflow_run(run_id)

    return await asyncio.wait_for(poll(), timeout=5)


@pytest.mark.asyncio
async def test_run_flow_persists_result(dispatcher, store, registry):
    result = await dispatcher.run_flow(PASSING, flow_name="adhoc")

    assert result.success
    assert result.run_id in store.flow_runs
    record = store.flow_runs[result.run_id]
    assert record.status == "passed"
    assert record.flow_name == "adhoc"
    assert record.logs == result.logs
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_run_flow_records_failure(dispatcher, store):
    result = await dispatcher.run_flow(FAILING)

    assert result.status == "failed"
    assert store.flow_runs[result.run_id].error_message == result.error


class CountingRunner:
    """Runner stand-in that records how many runs overlap."""

    active = 0
    peak = 0

    def __init__(self):
        self.aborted = False

    async def abort(self):
        self.aborted = True

    async def run(self, steps, variables=None):
        cls = type(self)
        cls.active += 1
        cls.peak = max(cls.peak, cls.active)
        await asyncio.sleep(0.02)
        cls.active -= 1
        failed = any(step.value == "Nope" for step in steps)
        return FlowResult(
            success=not failed,
            status="failed" if failed else "passed",
            logs=[],
            duration_ms=20,
            error="Nope" if failed else None,
        )


@pytest.mark.asyncio
@pytest.mark.parametrize("concurrency", [1, 2])
async def test_suite_respects_concurrency_and_order(store, registry, concurrency):
    runner_class = type("Runner", (CountingRunner,), {"active": 0, "peak": 0})
    dispatcher = Dispatcher(store, runner_factory=runner_class, registry=registry)
    flows = [
        LoadedFlow(name=f"flow-{i}.json", steps=steps_of(FAILING if i == 2 else PASSING))
        for i in range(5)
    ]

    suite = await dispatcher.run_suite(flows, concurrency=concurrency)

    assert [r.name for r in suite.results] == [f.name for f in flows]
    assert [r.success for r in suite.results] == [True, True, False, True, True]
    assert suite.summary.total == 5
    assert suite.summary.passed == 4
    assert suite.summary.failed == 1
    assert runner_class.peak == concurrency
    assert len(store.flow_runs) == 5


@pytest.mark.asyncio
async def test_suite_reports_crashed_flow(store, registry):
    class CrashingRunner(CountingRunner):
        async def run(self, steps, variables=None):
            raise RuntimeError("chromium crashed")

    dispatcher = Dispatcher(store, runner_factory=CrashingRunner, registry=registry)

    suite = await dispatcher.run_suite([LoadedFlow(name="a.json", steps=[])], concurrency=2)

    assert suite.results[0].status == "failed"
    assert suite.results[0].error == "chromium crashed"
    assert suite.summary.failed == 1


@pytest.mark.asyncio
async def test_flow_run_id_reaches_runner(store, registry):
    class RecordingRunner(CountingRunner):
        async def run(self, steps, variables=None):
            return FlowResult(success=True, status="passed", logs=[self.run_id], duration_ms=0)

    dispatcher = Dispatcher(store, runner_factory=RecordingRunner, registry=registry)

    result = await dispatcher.run_flow(steps_of(PASSING))

    assert result.logs == [result.run_id]


@pytest.mark.asyncio
async def test_start_stored_workflow(dispatcher, store):
    workflow = store.add_workflow("nightly", WORKFLOW)

    engine = await dispatcher.start_workflow("nightly", inputs={"env": "qa"}, trigger_type="webhook")

    run = await wait_for_run(store, engine.run_id)
    assert run.status == "completed"
    assert run.workflow_id == workflow.id
    assert run.trigger_type == "webhook"


@pytest.mark.asyncio
async def test_start_unknown_workflow(dispatcher, store):
    with pytest.raises(WorkflowNotFound):
        await dispatcher.start_workflow("ghost")
    assert store.workflow_runs == {}


@pytest.mark.asyncio
async def test_start_invalid_definition(dispatcher, store):
    with pytest.raises(GraphIntegrityError):
        await dispatcher.start_workflow(definition={"nodes": [{"id": "x", "type": "teleport"}]})
    with pytest.raises(GraphIntegrityError):
        await dispatcher.start_workflow(definition={"nodes": [{"id": "e", "type": "end", "data": {}}]})
    assert store.workflow_runs == {}


@pytest.mark.asyncio
async def test_run_now_file_target(dispatcher, store, tmp_path):
    (tmp_path / "smoke.json").write_text(json.dumps(PASSING))

    outcome = await run_now(dispatcher, "file", "smoke.json")

    assert outcome["type"] == "file"
    assert outcome["status"] == "passed"
    assert outcome["success"] is True
    assert store.flow_runs[outcome["runId"]].flow_name == "smoke.json"


@pytest.mark.asyncio
async def test_run_now_workflow_target(dispatcher, store):
    store.add_workflow("nightly", WORKFLOW)

    outcome = await run_now(dispatcher, "workflow", "nightly")

    assert outcome["status"] == "running"
    run = await wait_for_run(store, outcome["runId"])
    assert run.trigger_type == "scheduled"
    assert run.status == "completed"


@pytest.mark.asyncio
async def test_run_now_rejects_unknown_target(dispatcher):
    with pytest.raises(ValueError, match="Unknown target type"):
        await run_now(dispatcher, "carrier-pigeon", "x")


@pytest.mark.asyncio
async def test_scheduled_job_records_outcome(dispatcher, store, tmp_path):
    (tmp_path / "smoke.json").write_text(json.dumps(PASSING))
    job = store.add_scheduled_job("file", "smoke")

    outcome = await run_scheduled_job(dispatcher, job)

    assert outcome["status"] == "passed"
    assert store.scheduled_jobs[job.id].last_run_status == "passed"
    assert store.scheduled_jobs[job.id].last_run_at is not None


@pytest.mark.asyncio
async def test_inactive_job_is_skipped(dispatcher, store):
    job = store.add_scheduled_job("file", "smoke", active=False)

    assert await run_scheduled_job(dispatcher, job) is None
    assert store.scheduled_jobs[job.id].last_run_at is None
    assert store.flow_runs == {}


@pytest.mark.asyncio
async def test_job_with_missing_target_is_recorded_failed(dispatcher, store):
    job = store.add_scheduled_job("file", "missing")

    with pytest.raises(FlowNotFound):
        await run_scheduled_job(dispatcher, job)

    assert store.scheduled_jobs[job.id].last_run_status == "failed"
