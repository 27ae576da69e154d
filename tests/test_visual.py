from pathlib import Path

import pytest

from flowpilot.services.visual import VisualComparator, safe_snapshot_name

from conftest import FakeSession, png_bytes


@pytest.mark.asyncio
async def test_first_capture_becomes_baseline(comparator, snapshots_dir):
    result = await comparator.compare(FakeSession(screenshot=png_bytes()), "home")

    assert result.match is True
    assert result.created_baseline is True
    assert Path(result.baseline_path) == snapshots_dir / "baseline" / "home.png"
    assert Path(result.baseline_path).exists()
    assert result.diff_path is None
    assert not (snapshots_dir / "diffs").exists() or not any((snapshots_dir / "diffs").iterdir())


@pytest.mark.asyncio
async def test_unchanged_page_matches_repeatedly(comparator, snapshots_dir):
    session = FakeSession(screenshot=png_bytes())

    await comparator.compare(session, "home")
    first = await comparator.compare(session, "home")
    second = await comparator.compare(session, "home")

    assert first.match and second.match
    assert not first.created_baseline
    assert comparator.list_diffs() == []


@pytest.mark.asyncio
async def test_changed_page_writes_actual_and_diff(comparator, snapshots_dir):
    await comparator.compare(FakeSession(screenshot=png_bytes()), "home")
    baseline_before = (snapshots_dir / "baseline" / "home.png").read_bytes()

    changed = png_bytes(patch=((0, 0, 5, 5), (0, 0, 0)))
    result = await comparator.compare(FakeSession(screenshot=changed), "home", "run-1")

    assert result.match is False
    assert result.diff_pixels == 25
    assert Path(result.actual_path) == snapshots_dir / "actual" / "home@run-1.png"
    assert Path(result.actual_path).read_bytes() == changed
    assert Path(result.diff_path) == snapshots_dir / "diffs" / "home@run-1.diff.png"
    assert Path(result.diff_path).exists()
    # Baselines only change through approve()
    assert (snapshots_dir / "baseline" / "home.png").read_bytes() == baseline_before


@pytest.mark.asyncio
async def test_failed_capture_survives_later_match(comparator):
    base = png_bytes()
    comparator.compare_bytes(base, "home")
    failed = comparator.compare_bytes(png_bytes(color=(0, 0, 0)), "home", "run-1")

    later = comparator.compare_bytes(base, "home", "run-2")

    assert later.match
    assert Path(failed.actual_path).exists()
    assert Path(failed.diff_path).exists()
    assert [(d["name"], d["run_id"]) for d in comparator.list_diffs()] == [("home", "run-1")]


def test_concurrent_runs_keep_separate_artifacts(comparator):
    comparator.compare_bytes(png_bytes(), "home")
    first = comparator.compare_bytes(png_bytes(color=(0, 0, 0)), "home", "run-1")
    second = comparator.compare_bytes(png_bytes(color=(0, 0, 255)), "home", "run-2")

    assert first.diff_path != second.diff_path
    assert Path(first.actual_path).read_bytes() == png_bytes(color=(0, 0, 0))
    assert Path(second.actual_path).read_bytes() == png_bytes(color=(0, 0, 255))


def test_generated_run_id_when_none_given(comparator):
    comparator.compare_bytes(png_bytes(), "home")
    first = comparator.compare_bytes(png_bytes(color=(0, 0, 0)), "home")
    second = comparator.compare_bytes(png_bytes(color=(0, 0, 0)), "home")

    assert first.diff_path != second.diff_path
    assert len(comparator.list_diffs()) == 2


@pytest.mark.asyncio
async def test_differences_within_tolerance_match(comparator):
    await comparator.compare(FakeSession(screenshot=png_bytes((200, 200, 200))), "soft")

    result = await comparator.compare(FakeSession(screenshot=png_bytes((210, 200, 200))), "soft")

    assert result.match is True


@pytest.mark.asyncio
async def test_size_change_is_a_mismatch(comparator):
    await comparator.compare(FakeSession(screenshot=png_bytes(size=(20, 10))), "layout")

    result = await comparator.compare(FakeSession(screenshot=png_bytes(size=(20, 12))), "layout")

    assert result.match is False
    assert result.diff_path is not None


@pytest.mark.asyncio
async def test_approve_promotes_actual_and_clears_artifacts(comparator, snapshots_dir):
    await comparator.compare(FakeSession(screenshot=png_bytes()), "home")
    changed = png_bytes(color=(0, 0, 255))
    result = await comparator.compare(FakeSession(screenshot=changed), "home", "run-1")

    assert [d["name"] for d in comparator.list_diffs()] == ["home"]
    assert comparator.approve("home") is True

    assert (snapshots_dir / "baseline" / "home.png").read_bytes() == changed
    assert not Path(result.actual_path).exists()
    assert not Path(result.diff_path).exists()
    assert (await comparator.compare(FakeSession(screenshot=changed), "home")).match


def test_approve_specific_run(comparator, snapshots_dir):
    comparator.compare_bytes(png_bytes(), "home")
    comparator.compare_bytes(png_bytes(color=(0, 0, 0)), "home", "run-1")
    comparator.compare_bytes(png_bytes(color=(0, 0, 255)), "home", "run-2")

    assert comparator.approve("home", "run-1") is True

    assert (snapshots_dir / "baseline" / "home.png").read_bytes() == png_bytes(color=(0, 0, 0))
    # Both captures were taken against the replaced baseline
    assert comparator.list_diffs() == []


def test_approve_unknown_run(comparator):
    comparator.compare_bytes(png_bytes(), "home")
    comparator.compare_bytes(png_bytes(color=(0, 0, 0)), "home", "run-1")

    assert comparator.approve("home", "run-9") is False
    assert len(comparator.list_diffs()) == 1


@pytest.mark.asyncio
async def test_reject_keeps_baseline(comparator, snapshots_dir):
    original = png_bytes()
    await comparator.compare(FakeSession(screenshot=original), "home")
    await comparator.compare(FakeSession(screenshot=png_bytes(color=(0, 0, 0))), "home")

    assert comparator.reject("home") is True
    assert comparator.list_diffs() == []
    assert (snapshots_dir / "baseline" / "home.png").read_bytes() == original


def test_reject_one_run(comparator):
    comparator.compare_bytes(png_bytes(), "home")
    comparator.compare_bytes(png_bytes(color=(0, 0, 0)), "home", "run-1")
    comparator.compare_bytes(png_bytes(color=(0, 0, 255)), "home", "run-2")

    assert comparator.reject("home", "run-1") is True

    assert [d["run_id"] for d in comparator.list_diffs()] == ["run-2"]


def test_approve_without_pending_capture(comparator):
    assert comparator.approve("nothing") is False
    assert comparator.reject("nothing") is False


def test_pending_captures_are_per_name(comparator):
    comparator.compare_bytes(png_bytes(), "home")
    comparator.compare_bytes(png_bytes(), "home2")
    comparator.compare_bytes(png_bytes(color=(0, 0, 0)), "home2", "run-1")

    assert comparator.pending("home") == []
    assert comparator.approve("home") is False
    assert [c.name for c in comparator.pending("home2")] == ["home2"]


def test_snapshot_names_are_sanitised(tmp_path):
    comparator = VisualComparator(tmp_path, threshold=0.1)
    baseline = comparator.baseline_path("../../etc/passwd")
    actual, diff = comparator.capture_paths("checkout@page", "../run")

    assert safe_snapshot_name("checkout page/step 1") == "checkout_page_step_1"
    assert baseline.parent == tmp_path / "baseline"
    assert actual == tmp_path / "actual" / "checkout_page@run.png"
    assert diff.parent == tmp_path / "diffs"
