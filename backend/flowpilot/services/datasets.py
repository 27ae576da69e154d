"""Load loop datasets from JSON or CSV files."""

import asyncio
import csv
import io
import json
import logging
from pathlib import Path
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flowpilot.config import get_settings
from flowpilot.models.dataset import Dataset

logger = logging.getLogger(__name__)

SUPPORTED_SUFFIXES = (".json", ".csv")


class DatasetError(ValueError):
    """Dataset missing, unreadable or not a list of rows."""


def parse_dataset(content: str, fmt: str) -> list[Any]:
    """
    Parse dataset text.

    JSON must be an array. CSV uses the first line as column names and
    yields one dict per non-empty row.
    """
    if fmt == "json":
        try:
            data = json.loads(content)
        except ValueError as e:
            raise DatasetError(f"Invalid JSON dataset: {e}") from e
        if not isinstance(data, list):
            raise DatasetError("JSON dataset must be an array")
        return data

    if fmt == "csv":
        reader = csv.DictReader(io.StringIO(content))
        return [
            dict(row) for row in reader
            if any((v or "").strip() for v in row.values())
        ]

    raise DatasetError(f"Unsupported dataset format '{fmt}'. Use json or csv")


class DatasetProvider:
    """
    Resolve a dataset name to its rows.

    Lookup order: a file name with extension under ``datasets_dir``, then a
    ``datasets`` table entry when a database session factory is configured,
    then ``<name>.json`` and ``<name>.csv``.
    """

    def __init__(
        self,
        datasets_dir: str | Path | None = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.root = Path(datasets_dir or get_settings().datasets_dir)
        self.session_factory = session_factory

    def _safe_path(self, relative: str) -> Path:
        root = self.root.resolve()
        path = (root / relative).resolve()
        if not path.is_relative_to(root):
            raise DatasetError(f"Dataset path escapes datasets directory: {relative}")
        return path

    async def load(self, name: str) -> list[Any]:
        if name.endswith(SUPPORTED_SUFFIXES):
            return await self._read(self._safe_path(name))

        if self.session_factory is not None:
            record = await self._lookup(name)
            if record is not None:
                path = Path(record.content_path)
                if not path.is_absolute():
                    path = self._safe_path(record.content_path)
                return await self._read(path, record.type)

        for suffix in SUPPORTED_SUFFIXES:
            path = self._safe_path(f"{name}{suffix}")
            if path.exists():
                return await self._read(path)

        raise DatasetError(f"Dataset '{name}' not found")

    async def _lookup(self, name: str) -> Optional[Dataset]:
        async with self.session_factory() as db:
            result = await db.execute(select(Dataset).where(Dataset.name == name))
            return result.scalar_one_or_none()

    async def _read(self, path: Path, fmt: Optional[str] = None) -> list[Any]:
        fmt = (fmt or path.suffix.lstrip(".")).lower()
        try:
            content = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except OSError as e:
            raise DatasetError(f"Cannot read dataset {path.name}: {e}") from e
        rows = parse_dataset(content, fmt)
        logger.info("Loaded dataset %s (%d rows)", path.name, len(rows))
        return rows
