"""Visual regression: compare page screenshots against stored baselines."""

import asyncio
import io
import logging
import re
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from PIL import Image, ImageChops

from flowpilot.config import get_settings
from flowpilot.services.browser import BrowserSession

logger = logging.getLogger(__name__)

_UNSAFE_NAME = re.compile(r'[^A-Za-z0-9._-]+')

DIFF_SUFFIX = ".diff.png"
# Separates snapshot name from run id in capture file names. Never survives
# safe_snapshot_name(), so the split is unambiguous.
RUN_SEPARATOR = "@"


def safe_snapshot_name(name: str) -> str:
    """Reduce a snapshot name to a safe file stem."""
    cleaned = _UNSAFE_NAME.sub('_', name).strip('._')
    return cleaned or "snapshot"


@dataclass
class VisualResult:
    match: bool
    baseline_path: str
    actual_path: Optional[str] = None
    diff_path: Optional[str] = None
    diff_pixels: int = 0
    created_baseline: bool = False


@dataclass
class PendingCapture:
    name: str
    run_id: str
    actual_path: Path
    diff_path: Path

    def discard(self):
        self.actual_path.unlink(missing_ok=True)
        self.diff_path.unlink(missing_ok=True)


class VisualComparator:
    """
    Screenshot comparison against ``<snapshots_dir>/baseline``.

    Layout:
        baseline/<name>.png               approved reference image
        actual/<name>@<run>.png           mismatching capture from one run
        diffs/<name>@<run>.diff.png       highlighted difference of the above

    The first capture for a name becomes its baseline. Afterwards baselines
    are only replaced through ``approve()``. Mismatch artifacts are scoped to
    the run that produced them and stay on disk until approved or rejected,
    so a later matching run never removes the evidence of an earlier failure.
    """

    def __init__(self, snapshots_dir: str | Path | None = None, threshold: float | None = None):
        settings = get_settings()
        self.root = Path(snapshots_dir or settings.snapshots_dir)
        self.threshold = settings.visual_threshold if threshold is None else threshold

    @property
    def baseline_dir(self) -> Path:
        return self.root / "baseline"

    @property
    def actual_dir(self) -> Path:
        return self.root / "actual"

    @property
    def diffs_dir(self) -> Path:
        return self.root / "diffs"

    def baseline_path(self, name: str) -> Path:
        return self.baseline_dir / f"{safe_snapshot_name(name)}.png"

    def capture_paths(self, name: str, run_id: str) -> tuple[Path, Path]:
        key = f"{safe_snapshot_name(name)}{RUN_SEPARATOR}{safe_snapshot_name(run_id)}"
        return self.actual_dir / f"{key}.png", self.diffs_dir / f"{key}{DIFF_SUFFIX}"

    async def compare(
        self, session: BrowserSession, snapshot_name: str, run_id: Optional[str] = None
    ) -> VisualResult:
        png = await session.screenshot()
        return await asyncio.to_thread(self.compare_bytes, png, snapshot_name, run_id)

    def compare_bytes(self, png: bytes, snapshot_name: str, run_id: Optional[str] = None) -> VisualResult:
        baseline_path = self.baseline_path(snapshot_name)

        if not baseline_path.exists():
            baseline_path.parent.mkdir(parents=True, exist_ok=True)
            baseline_path.write_bytes(png)
            logger.info("Created new baseline for %s", snapshot_name)
            return VisualResult(match=True, baseline_path=str(baseline_path), created_baseline=True)

        with Image.open(baseline_path) as base_file, Image.open(io.BytesIO(png)) as actual_file:
            base_img = base_file.convert("RGBA")
            actual_img = actual_file.convert("RGBA")

        size_mismatch = base_img.size != actual_img.size
        if size_mismatch:
            actual_cmp = actual_img.resize(base_img.size)
        else:
            actual_cmp = actual_img

        mask = self._difference_mask(base_img, actual_cmp)
        diff_pixels = mask.histogram()[255]

        if diff_pixels == 0 and not size_mismatch:
            return VisualResult(match=True, baseline_path=str(baseline_path))

        actual_path, diff_path = self.capture_paths(snapshot_name, run_id or uuid.uuid4().hex[:12])
        actual_path.parent.mkdir(parents=True, exist_ok=True)
        diff_path.parent.mkdir(parents=True, exist_ok=True)
        actual_path.write_bytes(png)
        self._render_diff(base_img, mask).save(diff_path)

        if size_mismatch:
            logger.info(
                "Snapshot %s size changed: baseline %s, actual %s",
                snapshot_name, base_img.size, actual_img.size,
            )
        logger.info("Diff detected for %s: %d pixels differ", snapshot_name, diff_pixels)
        return VisualResult(
            match=False,
            baseline_path=str(baseline_path),
            actual_path=str(actual_path),
            diff_path=str(diff_path),
            diff_pixels=diff_pixels,
        )

    def _difference_mask(self, base_img: Image.Image, actual_img: Image.Image) -> Image.Image:
        """255 where any channel differs by more than the tolerance, else 0."""
        diff = ImageChops.difference(base_img, actual_img)
        r, g, b, a = diff.split()
        strongest = ImageChops.lighter(ImageChops.lighter(r, g), ImageChops.lighter(b, a))
        cutoff = int(self.threshold * 255)
        return strongest.point(lambda v: 255 if v > cutoff else 0)

    def _render_diff(self, base_img: Image.Image, mask: Image.Image) -> Image.Image:
        faded = Image.blend(base_img, Image.new("RGBA", base_img.size, (255, 255, 255, 255)), 0.7)
        highlight = Image.new("RGBA", base_img.size, (255, 0, 0, 255))
        return Image.composite(highlight, faded, mask)

    def pending(self, name: Optional[str] = None) -> list[PendingCapture]:
        """Unreviewed mismatches, oldest first, optionally for one snapshot name."""
        if not self.diffs_dir.exists():
            return []
        pattern = f"{safe_snapshot_name(name)}{RUN_SEPARATOR}*" if name else "*"
        captures = []
        for diff_path in self.diffs_dir.glob(f"{pattern}{DIFF_SUFFIX}"):
            key = diff_path.name[: -len(DIFF_SUFFIX)]
            stem, sep, run_id = key.rpartition(RUN_SEPARATOR)
            if not sep:
                continue
            captures.append(PendingCapture(
                name=stem,
                run_id=run_id,
                actual_path=self.actual_dir / f"{key}.png",
                diff_path=diff_path,
            ))
        captures.sort(key=lambda c: (c.name, c.diff_path.stat().st_mtime_ns, c.run_id))
        return captures

    def _select(self, name: str, run_id: Optional[str]) -> list[PendingCapture]:
        captures = self.pending(name)
        if run_id is not None:
            wanted = safe_snapshot_name(run_id)
            captures = [c for c in captures if c.run_id == wanted]
        return captures

    def approve(self, name: str, run_id: Optional[str] = None) -> bool:
        """
        Promote a mismatching capture to baseline. False if there is none.

        Without ``run_id`` the most recent capture wins. Every pending capture
        for the name was taken against the old baseline, so all of them are
        discarded once the new one is in place.
        """
        captures = [c for c in self._select(name, run_id) if c.actual_path.exists()]
        if not captures:
            return False
        chosen = captures[-1]
        baseline_path = self.baseline_path(name)
        baseline_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(chosen.actual_path, baseline_path)
        for capture in self.pending(name):
            capture.discard()
        logger.info("Approved new baseline for %s from run %s", name, chosen.run_id)
        return True

    def reject(self, name: str, run_id: Optional[str] = None) -> bool:
        """Discard pending mismatches (all runs, or one) and keep the current baseline."""
        captures = self._select(name, run_id)
        for capture in captures:
            capture.discard()
        return bool(captures)

    def list_diffs(self) -> list[dict]:
        return [
            {
                "name": capture.name,
                "run_id": capture.run_id,
                "baseline": str(self.baseline_path(capture.name)),
                "actual": str(capture.actual_path),
                "diff": str(capture.diff_path),
            }
            for capture in self.pending()
        ]
