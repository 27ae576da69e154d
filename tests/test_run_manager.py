import asyncio

import pytest

from flowpilot.services.run_manager import RunRegistry

from conftest import EXAMPLE_URL, FakeSession


class StubRun:
    def __init__(self, fail=False):
        self.aborted = 0
        self.fail = fail

    async def abort(self):
        self.aborted += 1
        if self.fail:
            raise RuntimeError("browser already gone")


def test_register_and_unregister():
    registry = RunRegistry()
    run = StubRun()

    registry.register("flow-1", run)
    assert "flow-1" in registry
    assert registry.get("flow-1") is run
    assert registry.active_keys() == ["flow-1"]

    registry.unregister("flow-1")
    assert len(registry) == 0
    assert registry.get("flow-1") is None


def test_unregister_ignores_replaced_runner():
    registry = RunRegistry()
    old, new = StubRun(), StubRun()
    registry.register("flow-1", old)
    registry.register("flow-1", new)

    registry.unregister("flow-1", old)

    assert registry.get("flow-1") is new


def test_track_removes_entry_on_error():
    registry = RunRegistry()
    run = StubRun()

    with pytest.raises(ValueError):
        with registry.track("flow-1", run):
            assert "flow-1" in registry
            raise ValueError("boom")

    assert "flow-1" not in registry


@pytest.mark.asyncio
async def test_stop_unknown_key_returns_false():
    assert await RunRegistry().stop("nope") is False


@pytest.mark.asyncio
async def test_stop_aborts_and_removes():
    registry = RunRegistry()
    run = StubRun()
    registry.register("flow-1", run)

    assert await registry.stop("flow-1") is True

    assert run.aborted == 1
    assert "flow-1" not in registry
    assert await registry.stop("flow-1") is False


@pytest.mark.asyncio
async def test_stop_all_survives_failing_abort():
    registry = RunRegistry()
    runs = [StubRun(), StubRun(fail=True), StubRun()]
    for i, run in enumerate(runs):
        registry.register(f"flow-{i}", run)

    assert await registry.stop_all() == 3

    assert len(registry) == 0
    assert [r.aborted for r in runs] == [1, 1, 1]
    assert await registry.stop_all() == 0


@pytest.mark.asyncio
async def test_stop_all_closes_running_browsers(make_runner):
    registry = RunRegistry()
    sessions = [FakeSession(), FakeSession()]
    runners = [make_runner(s) for s in sessions]
    steps = [{"action": "goto", "value": EXAMPLE_URL}, {"action": "wait", "value": "60000"}]

    tasks = []
    for i, runner in enumerate(runners):
        registry.register(f"suite-{i}", runner)
        tasks.append(asyncio.create_task(runner.run(steps)))
    while not all(r.step_index == 1 for r in runners):
        await asyncio.sleep(0.01)

    assert await registry.stop_all() == 2
    results = await asyncio.wait_for(asyncio.gather(*tasks), timeout=5)

    assert [r.status for r in results] == ["aborted", "aborted"]
    assert all(s.closed for s in sessions)
    assert len(registry) == 0
