import asyncio
import re
from pathlib import Path

import pytest

from flowpilot.services.browser import ApiResponse
from flowpilot.services.test_runner import FlowRunner, RunState

from conftest import EXAMPLE_URL, FakeSession, png_bytes

LOG_LINE = re.compile(r"^\[\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z\] ")


@pytest.mark.asyncio
async def test_example_domain_flow_passes(make_runner):
    session = FakeSession()
    runner = make_runner(session)

    result = await runner.run([
        {"id": "1", "action": "goto", "value": EXAMPLE_URL},
        {"id": "2", "action": "assertion", "value": "Example Domain"},
    ])

    assert result.success is True
    assert result.status == "passed"
    assert result.error is None
    assert runner.state == RunState.PASSED
    assert session.closed
    assert all(LOG_LINE.match(line) for line in result.logs)
    assert any("Executing Step: goto" in line for line in result.logs)


@pytest.mark.asyncio
async def test_missing_text_fails_with_assertion_line(make_runner):
    session = FakeSession()
    runner = make_runner(session)

    result = await runner.run([
        {"id": "1", "action": "goto", "value": EXAMPLE_URL},
        {"id": "2", "action": "assertion", "value": "Nonexistent Text"},
        {"id": "3", "action": "click", "selector": "#never"},
    ])

    assert result.success is False
    assert result.status == "failed"
    assert result.error == 'Assertion Failed: Text "Nonexistent Text" not found.'
    assert any("Test Failed: Assertion Failed" in line for line in result.logs)
    # Steps after the failure never run
    assert ("click", "#never") not in session.calls
    assert session.closed


@pytest.mark.asyncio
async def test_variables_are_substituted(make_runner):
    session = FakeSession(pages={"https://shop.test/u/alice": "Welcome alice"})
    runner = make_runner(session)

    result = await runner.run(
        [
            {"action": "goto", "value": "https://shop.test/u/${user}"},
            {"action": "type", "selector": "#q", "value": "${missing}"},
            {"action": "assertion", "value": "Welcome ${user}"},
        ],
        {"user": "alice"},
    )

    assert result.success
    assert ("fill", "#q", "${missing}") in session.calls


@pytest.mark.asyncio
async def test_page_object_selectors_are_resolved(make_runner):
    session = FakeSession()
    runner = make_runner(session)

    result = await runner.run([{"action": "click", "selector": "Login.submit"}])

    assert result.success
    assert ("click", "#login-btn") in session.calls
    assert any("Resolved POM: Login.submit -> #login-btn" in line for line in result.logs)


@pytest.mark.asyncio
async def test_click_heals_with_description_text(make_runner):
    session = FakeSession(missing=("#old-login",), visible=("Login",))
    runner = make_runner(session)

    result = await runner.run([
        {"action": "click", "selector": "#old-login", "description": "Click the Login button"},
    ])

    assert result.success
    assert ("click", "text=Login") in session.calls
    assert any("Healed Selector: #old-login -> text=Login" in line for line in result.logs)
    assert runner.healing_suggestions[0]["suggested_selector"] == "text=Login"


@pytest.mark.asyncio
async def test_failed_healing_propagates_original_error(make_runner):
    session = FakeSession(missing=("#old-login",), visible=())
    runner = make_runner(session)

    result = await runner.run([
        {"action": "click", "selector": "#old-login", "description": "Click the Login button"},
    ])

    assert not result.success
    assert "#old-login" in result.error
    assert not any("Healed Selector" in line for line in result.logs)


@pytest.mark.asyncio
async def test_healed_retry_failure_reports_original_error(make_runner):
    session = FakeSession(missing=("#old-login", "text=Login"), visible=("Login",))
    runner = make_runner(session)

    result = await runner.run([
        {"action": "type", "selector": "#old-login", "value": "x", "description": "Type into Login field"},
    ])

    assert not result.success
    assert "#old-login" in result.error


@pytest.mark.asyncio
async def test_no_healing_without_description(make_runner):
    session = FakeSession(missing=("#old-login",), visible=("Login",))
    runner = make_runner(session)

    result = await runner.run([{"action": "click", "selector": "#old-login"}])

    assert not result.success
    assert ("click", "text=Login") not in session.calls
    assert not any("Attempting Self-Healing" in line for line in result.logs)


@pytest.mark.asyncio
async def test_no_healing_when_disabled(make_runner):
    session = FakeSession(missing=("#old-login",), visible=("Login",))
    runner = make_runner(session, healing=False)

    result = await runner.run([
        {"action": "click", "selector": "#old-login", "description": "Click the Login button"},
    ])

    assert not result.success


@pytest.mark.asyncio
async def test_api_request_and_assertions(make_runner):
    session = FakeSession(api_responses={
        ("POST", "https://api.test/users"): ApiResponse(status=201, body={"id": 7, "name": "Ann"}),
    })
    runner = make_runner(session)

    result = await runner.run([
        {"action": "api_request", "selector": "post", "value": "https://api.test/users", "apiBody": '{"name": "Ann"}'},
        {"action": "api_assert", "selector": "status", "value": "201"},
        {"action": "api_assert", "selector": "body", "value": '"name":"Ann"'},
    ])

    assert result.success, result.error
    assert session.requests == [("POST", "https://api.test/users", {"name": "Ann"})]
    assert runner.last_api_response.status == 201


@pytest.mark.asyncio
async def test_api_request_defaults_and_raw_body(make_runner):
    session = FakeSession(api_responses={
        ("GET", "https://api.test/ping"): ApiResponse(status=200, body="pong"),
    })
    runner = make_runner(session)

    result = await runner.run([
        {"action": "api_request", "value": "https://api.test/ping", "api_body": "not json"},
        {"action": "api_assert", "selector": "status"},
        {"action": "api_assert", "selector": "body", "value": "pong"},
    ])

    assert result.success, result.error
    assert session.requests == [("GET", "https://api.test/ping", "not json")]


@pytest.mark.asyncio
async def test_api_assert_failures(make_runner):
    no_request = await make_runner(FakeSession()).run([{"action": "api_assert", "selector": "status", "value": "200"}])
    assert no_request.error == "No previous API response to assert against."

    session = FakeSession(api_responses={("GET", "https://api.test/x"): ApiResponse(status=500, body={})})
    wrong_status = await make_runner(session).run([
        {"action": "api_request", "selector": "GET", "value": "https://api.test/x"},
        {"action": "api_assert", "selector": "status", "value": "200"},
    ])
    assert wrong_status.error == "API Status Assertion Failed. Expected 200, got 500"

    session = FakeSession(api_responses={("GET", "https://api.test/x"): ApiResponse(status=200, body={})})
    unknown_target = await make_runner(session).run([
        {"action": "api_request", "selector": "GET", "value": "https://api.test/x"},
        {"action": "api_assert", "selector": "headers", "value": "x"},
    ])
    assert not unknown_target.success


@pytest.mark.asyncio
async def test_visual_assert_baseline_then_mismatch(make_runner, snapshots_dir):
    first = await make_runner(FakeSession(screenshot=png_bytes())).run([
        {"id": "9", "action": "visual_assert"},
    ])
    assert first.success
    assert (snapshots_dir / "baseline" / "step-9.png").exists()

    runner = make_runner(FakeSession(screenshot=png_bytes(color=(0, 0, 0))))
    runner.run_id = "run-2"
    second = await runner.run([{"id": "9", "action": "visual_assert"}])
    assert not second.success
    assert second.error.startswith("Visual Regression Failed. Diff saved at")
    assert second.artifacts == [
        str(snapshots_dir / "actual" / "step-9@run-2.png"),
        str(snapshots_dir / "diffs" / "step-9@run-2.diff.png"),
    ]

    third = await make_runner(FakeSession(screenshot=png_bytes())).run([
        {"id": "9", "action": "visual_assert"},
    ])
    assert third.success
    assert all(Path(p).exists() for p in second.artifacts)


@pytest.mark.asyncio
async def test_wait_uses_default_for_invalid_values(make_runner):
    runner = make_runner(FakeSession())

    assert runner._wait_ms(None) == 1000
    assert runner._wait_ms("soon") == 1000
    assert runner._wait_ms("-5") == 1000
    assert runner._wait_ms("250") == 250

    result = await runner.run([{"action": "wait", "value": "10"}])
    assert result.success


@pytest.mark.asyncio
async def test_abort_during_wait_ends_run_as_aborted(make_runner):
    session = FakeSession()
    runner = make_runner(session)

    task = asyncio.create_task(runner.run([
        {"action": "goto", "value": EXAMPLE_URL},
        {"action": "wait", "value": "60000"},
        {"action": "click", "selector": "#after"},
    ]))
    while runner.step_index != 1:
        await asyncio.sleep(0.01)
    await runner.abort()
    result = await asyncio.wait_for(task, timeout=5)

    assert result.status == "aborted"
    assert result.success is False
    assert result.error is None
    assert runner.state == RunState.ABORTED
    assert ("click", "#after") not in session.calls
    assert session.closed


@pytest.mark.asyncio
async def test_abort_before_run_opens_no_session(make_runner):
    session = FakeSession()
    runner = make_runner(session)
    await runner.abort()

    result = await runner.run([{"action": "goto", "value": EXAMPLE_URL}])

    assert result.status == "aborted"
    assert session.calls == []


@pytest.mark.asyncio
async def test_session_launch_failure_becomes_failed_result():
    async def broken_factory(headless):
        raise RuntimeError("browser not installed")

    runner = FlowRunner(session_factory=broken_factory)
    result = await runner.run([{"action": "goto", "value": EXAMPLE_URL}])

    assert result.status == "failed"
    assert "browser not installed" in result.error


@pytest.mark.asyncio
async def test_runner_is_single_use(make_runner):
    runner = make_runner(FakeSession())
    await runner.run([])

    with pytest.raises(RuntimeError):
        await runner.run([])


@pytest.mark.asyncio
async def test_on_step_callback_reports_progress(make_runner):
    events = []

    async def on_step(event):
        events.append((event["index"], event["status"]))

    runner = make_runner(FakeSession(), on_step=on_step)
    await runner.run([
        {"action": "goto", "value": EXAMPLE_URL},
        {"action": "assertion", "value": "Missing"},
    ])

    assert events == [(0, "passed"), (1, "failed")]
