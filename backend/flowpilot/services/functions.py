"""
User-defined functions for workflow function nodes.

Stored functions are trusted operator code: Python source defining
``run(context)`` that is saved through the functions API. They are not
sandboxed. Each call runs the source in a fresh child interpreter, so a
crash, a hang or leaked state in user code cannot take the engine down
with it. The context goes in as JSON on stdin and the return value comes
back as JSON on stdout; a call that outlives ``function_timeout`` is
killed.
"""

import ast
import asyncio
import json
import logging
import subprocess
import sys
from typing import Any, Callable, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flowpilot.config import get_settings
from flowpilot.models.function import UserFunction

logger = logging.getLogger(__name__)

UserCallable = Callable[[dict], Any]

# Executed by ``python -I -c``. User prints go to stderr so stdout carries
# only the result document.
_CHILD_SOURCE = """
import asyncio, json, sys
payload = json.load(sys.stdin)
out, sys.stdout = sys.stdout, sys.stderr
namespace = {"__name__": "flowpilot_function"}
exec(compile(payload["code"], "<function " + payload["name"] + ">", "exec"), namespace)
result = namespace["run"](payload["context"])
if asyncio.iscoroutine(result):
    result = asyncio.run(result)
json.dump({"result": result}, out, default=str)
"""

MAX_ERROR_CHARS = 500


class FunctionCompileError(ValueError):
    pass


class FunctionExecutionError(RuntimeError):
    pass


class FunctionStore(Protocol):
    async def lookup(self, name: str) -> Optional[UserCallable]: ...


def check_function_source(name: str, code: str) -> None:
    """Parse stored source without running it; it must define ``run``."""
    try:
        tree = ast.parse(code, filename=f"<function {name}>")
    except SyntaxError as e:
        raise FunctionCompileError(f"Function '{name}' failed to load: {e}") from e

    if not any(
        isinstance(stmt, (ast.FunctionDef, ast.AsyncFunctionDef)) and stmt.name == "run"
        for stmt in tree.body
    ):
        raise FunctionCompileError(f"Function '{name}' does not define run(context)")


def _last_error_line(stderr: bytes) -> str:
    lines = [line for line in stderr.decode(errors="replace").splitlines() if line.strip()]
    return lines[-1][:MAX_ERROR_CHARS] if lines else "no output"


async def run_in_child(name: str, code: str, context: dict, timeout: Optional[float] = None) -> Any:
    """Run stored source in a child interpreter and return what ``run(context)`` returned."""
    timeout = get_settings().function_timeout if timeout is None else timeout
    payload = json.dumps({"name": name, "code": code, "context": context}, default=str)

    try:
        # subprocess.run kills the child when the timeout expires
        proc = await asyncio.to_thread(
            subprocess.run,
            [sys.executable, "-I", "-c", _CHILD_SOURCE],
            input=payload.encode(),
            capture_output=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        raise FunctionExecutionError(f"Function '{name}' timed out after {timeout}s")

    if proc.returncode != 0:
        raise FunctionExecutionError(f"Function '{name}' failed: {_last_error_line(proc.stderr)}")
    if proc.stderr:
        logger.debug("Function %s output: %s", name, proc.stderr.decode(errors="replace")[:1000])

    try:
        return json.loads(proc.stdout)["result"]
    except (ValueError, KeyError) as e:
        raise FunctionExecutionError(f"Function '{name}' returned no result") from e


def load_function(name: str, code: str, timeout: Optional[float] = None) -> UserCallable:
    """Check stored source and wrap it as an async callable that runs out of process."""
    check_function_source(name, code)

    async def run(context: dict) -> Any:
        return await run_in_child(name, code, context, timeout)

    return run


class FunctionRegistry:
    """
    Name -> callable lookup.

    Callables registered in process win and run in process. With a session
    factory, names not registered are loaded from the ``functions`` table on
    each lookup, so edits to stored code apply to the next run.
    """

    def __init__(
        self,
        functions: Optional[dict[str, UserCallable]] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        timeout: Optional[float] = None,
    ):
        self._functions: dict[str, UserCallable] = dict(functions or {})
        self.session_factory = session_factory
        self.timeout = timeout

    def register(self, name: str, func: UserCallable) -> None:
        self._functions[name] = func

    async def lookup(self, name: str) -> Optional[UserCallable]:
        if name in self._functions:
            return self._functions[name]
        if self.session_factory is None:
            return None

        async with self.session_factory() as db:
            result = await db.execute(select(UserFunction).where(UserFunction.name == name))
            record = result.scalar_one_or_none()
        if record is None:
            return None

        logger.debug("Loading stored function %s v%s", record.name, record.version)
        return load_function(record.name, record.code, self.timeout)
