import io
from typing import Any

import pytest
from PIL import Image

from flowpilot.errors import LocatorNotFound
from flowpilot.services.browser import ApiResponse
from flowpilot.services.healer import Healer, HealerConfig
from flowpilot.services.run_manager import RunRegistry
from flowpilot.services.run_store import InMemoryRunStore
from flowpilot.services.selector_resolver import InMemoryPageObjectStore, SelectorResolver
from flowpilot.services.test_runner import FlowRunner
from flowpilot.services.visual import VisualComparator

EXAMPLE_URL = "https://example.com"
EXAMPLE_TEXT = (
    "Example Domain\n"
    "This domain is for use in illustrative examples in documents.\n"
    "More information..."
)


def png_bytes(color=(255, 255, 255), size=(20, 10), patch=None) -> bytes:
    """Solid PNG, optionally with a rectangle ``patch=(box, color)`` painted on it."""
    image = Image.new("RGB", size, color)
    if patch:
        box, patch_color = patch
        image.paste(patch_color, box)
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


class FakeSession:
    """In-memory stand-in for a Playwright page."""

    def __init__(
        self,
        pages: dict[str, str] | None = None,
        missing: tuple = (),
        visible: tuple = (),
        api_responses: dict[tuple[str, str], ApiResponse] | None = None,
        screenshot: bytes | None = None,
    ):
        self.pages = pages if pages is not None else {EXAMPLE_URL: EXAMPLE_TEXT}
        self.missing = set(missing)
        self.visible = list(visible)
        self.api_responses = api_responses or {}
        self.screenshot_bytes = screenshot if screenshot is not None else png_bytes()
        self.url: str | None = None
        self.body = ""
        self.calls: list[tuple] = []
        self.requests: list[tuple] = []
        self.closed = False
        self.close_calls = 0

    async def goto(self, url: str) -> None:
        self.calls.append(("goto", url))
        self.url = url
        self.body = self.pages.get(url, "")

    def _locate(self, selector: str):
        if selector in self.missing:
            raise LocatorNotFound(f"Timeout 30000ms exceeded waiting for selector '{selector}'", selector)

    async def click(self, selector: str) -> None:
        self._locate(selector)
        self.calls.append(("click", selector))

    async def fill(self, selector: str, value: str) -> None:
        self._locate(selector)
        self.calls.append(("fill", selector, value))

    async def wait_for_selector(self, selector: str, timeout: int | None = None) -> None:
        self._locate(selector)

    async def text_content(self, scope: str = "body") -> str:
        return self.body

    async def is_text_visible(self, text: str) -> bool:
        return any(text.lower() in v.lower() for v in self.visible)

    async def request(self, method: str, url: str, body: Any = None) -> ApiResponse:
        self.requests.append((method, url, body))
        return self.api_responses.get((method, url), ApiResponse(status=404, body={"error": "not found"}))

    async def screenshot(self) -> bytes:
        return self.screenshot_bytes

    async def close(self) -> None:
        self.close_calls += 1
        self.closed = True


@pytest.fixture
def snapshots_dir(tmp_path):
    return tmp_path / "snapshots"


@pytest.fixture
def comparator(snapshots_dir):
    return VisualComparator(snapshots_dir, threshold=0.1)


@pytest.fixture
def page_objects():
    return InMemoryPageObjectStore({"Login": {"submit": "#login-btn", "username": "input[name=user]"}})


@pytest.fixture
def make_runner(comparator, page_objects):
    """Build a FlowRunner whose session factory hands out ``session``."""

    def _make(session: FakeSession, healing: bool = True, **kwargs) -> FlowRunner:
        async def factory(headless: bool):
            return session

        return FlowRunner(
            session_factory=factory,
            selector_resolver=SelectorResolver(page_objects),
            healer=Healer(HealerConfig(enabled=healing)),
            comparator=comparator,
            headless=True,
            **kwargs,
        )

    return _make


@pytest.fixture
def sessions():
    """Every FakeSession created through ``runner_factory``."""
    return []


@pytest.fixture
def runner_factory(make_runner, sessions):
    """Zero-argument runner factory as used by the workflow engine."""

    def _factory() -> FlowRunner:
        session = FakeSession()
        sessions.append(session)
        return make_runner(session)

    return _factory


@pytest.fixture
def store():
    return InMemoryRunStore()


@pytest.fixture
def registry():
    return RunRegistry()
