"""Process-wide table of active runs, used to stop them."""

import asyncio
import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Protocol

logger = logging.getLogger(__name__)


class Abortable(Protocol):
    async def abort(self) -> None: ...


class RunRegistry:
    """
    Run key -> active Flow Runner or Workflow Engine.

    Every mutation happens under one lock and nothing is awaited while it is
    held; aborts run after the entry has been removed.
    """

    def __init__(self):
        self._runs: dict[str, Abortable] = {}
        self._lock = threading.Lock()

    def register(self, key: str, runner: Abortable) -> None:
        with self._lock:
            if key in self._runs and self._runs[key] is not runner:
                logger.warning("Run key %s re-registered, replacing previous runner", key)
            self._runs[key] = runner

    def unregister(self, key: str, runner: Abortable | None = None) -> None:
        """Remove ``key``. With ``runner``, only if it is still the one registered."""
        with self._lock:
            current = self._runs.get(key)
            if current is not None and (runner is None or current is runner):
                del self._runs[key]

    @contextmanager
    def track(self, key: str, runner: Abortable) -> Iterator[Abortable]:
        self.register(key, runner)
        try:
            yield runner
        finally:
            self.unregister(key, runner)

    def get(self, key: str) -> Abortable | None:
        with self._lock:
            return self._runs.get(key)

    def active_keys(self) -> list[str]:
        with self._lock:
            return list(self._runs)

    async def stop(self, key: str) -> bool:
        with self._lock:
            runner = self._runs.pop(key, None)
        if runner is None:
            return False
        logger.info("Stopping run %s", key)
        await runner.abort()
        return True

    async def stop_all(self) -> int:
        """Abort every registered run and wait for all aborts. Returns the count."""
        with self._lock:
            runners = list(self._runs.items())
            self._runs.clear()

        if not runners:
            return 0
        logger.info("Stopping %d active run(s)", len(runners))
        results = await asyncio.gather(*(r.abort() for _, r in runners), return_exceptions=True)
        for (key, _), result in zip(runners, results):
            if isinstance(result, Exception):
                logger.error("Abort of run %s failed: %s", key, result)
        return len(runners)

    def __len__(self) -> int:
        with self._lock:
            return len(self._runs)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._runs


run_registry = RunRegistry()
