"""Locate flow step lists: JSON files under tests_dir, or stored test flows."""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flowpilot.config import get_settings
from flowpilot.models.flow import TestFlow
from flowpilot.schemas.step import Step

logger = logging.getLogger(__name__)

UNTAGGED = "untagged"


class FlowNotFound(LookupError):
    pass


class InvalidFlow(ValueError):
    pass


@dataclass
class LoadedFlow:
    name: str
    steps: list[Step]
    tags: list[str] = field(default_factory=list)
    flow_id: Optional[str] = None


def parse_flow(name: str, content) -> LoadedFlow:
    """
    Accept either a bare step list or ``{"steps": [...], "tags": [...]}``.
    """
    if isinstance(content, list):
        raw_steps, tags = content, []
    elif isinstance(content, dict) and isinstance(content.get("steps"), list):
        raw_steps, tags = content["steps"], content.get("tags") or []
    else:
        raise InvalidFlow(f"Flow '{name}' has no step list")

    try:
        steps = [Step.model_validate(s) for s in raw_steps]
    except ValidationError as e:
        raise InvalidFlow(f"Flow '{name}' has invalid steps: {e}") from e

    return LoadedFlow(name=name, steps=steps, tags=[str(t) for t in tags])


def _as_uuid(value: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class FlowLoader:
    """Resolve a flow reference (file name or stored flow id) to steps."""

    def __init__(
        self,
        tests_dir: str | Path | None = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.root = Path(tests_dir or get_settings().tests_dir)
        self.session_factory = session_factory

    def _safe_path(self, relative: str) -> Path:
        root = self.root.resolve()
        path = (root / relative).resolve()
        if not path.is_relative_to(root):
            raise FlowNotFound(f"Flow path escapes tests directory: {relative}")
        return path

    async def load(self, reference: str) -> LoadedFlow:
        """Stored flow when ``reference`` is a flow id, otherwise a flow file."""
        flow_id = _as_uuid(reference)
        if flow_id is not None and self.session_factory is not None:
            return await self.load_stored(flow_id)
        return await self.load_file(reference)

    async def load_file(self, name: str) -> LoadedFlow:
        if not name.endswith(".json"):
            name = f"{name}.json"
        path = self._safe_path(name)
        if not path.is_file():
            raise FlowNotFound(f"Flow file '{name}' not found")

        text = await asyncio.to_thread(path.read_text, encoding="utf-8")
        try:
            content = json.loads(text)
        except ValueError as e:
            raise InvalidFlow(f"Flow file '{name}' is not valid JSON: {e}") from e
        return parse_flow(name, content)

    async def load_stored(self, flow_id: uuid.UUID) -> LoadedFlow:
        async with self.session_factory() as db:
            result = await db.execute(select(TestFlow).where(TestFlow.id == flow_id))
            flow = result.scalar_one_or_none()
        if flow is None:
            raise FlowNotFound(f"Test flow {flow_id} not found")
        loaded = parse_flow(flow.name, flow.steps or [])
        loaded.flow_id = str(flow.id)
        return loaded

    def list_files(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.name for p in self.root.glob("*.json") if p.is_file())

    async def flows_by_tag(self, tag: str) -> list[LoadedFlow]:
        """Flow files carrying ``tag``. Files without tags belong to "untagged"."""
        flows = []
        for name in self.list_files():
            try:
                flow = await self.load_file(name)
            except (InvalidFlow, FlowNotFound) as e:
                logger.warning("Skipping %s: %s", name, e)
                continue
            if tag in (flow.tags or [UNTAGGED]):
                flows.append(flow)
        return flows
