"""Resolve ``Page.Selector`` references to concrete locators."""

import logging
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flowpilot.models.page_object import Page, Selector

logger = logging.getLogger(__name__)


class PageObjectStore(Protocol):
    async def lookup(self, page_name: str, selector_name: str) -> str | None: ...


class InMemoryPageObjectStore:
    """Page objects held in a dict: {page_name: {selector_name: selector}}."""

    def __init__(self, pages: dict[str, dict[str, str]] | None = None):
        self.pages: dict[str, dict[str, str]] = {name: dict(sels) for name, sels in (pages or {}).items()}

    def add(self, page_name: str, selector_name: str, selector: str) -> None:
        self.pages.setdefault(page_name, {})[selector_name] = selector

    async def lookup(self, page_name: str, selector_name: str) -> str | None:
        return self.pages.get(page_name, {}).get(selector_name)


class SqlPageObjectStore:
    """Page objects read from the ``pages``/``selectors`` tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def lookup(self, page_name: str, selector_name: str) -> str | None:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Selector.selector)
                .join(Page, Selector.page_id == Page.id)
                .where(Page.name == page_name, Selector.name == selector_name)
            )
            return result.scalar_one_or_none()


class SelectorResolver:
    """
    Turn a step's selector into a concrete locator.

    ``Login.submit`` becomes the selector stored for page ``Login`` and name
    ``submit``. Anything that does not match a known pair is returned as-is,
    because literal locators (``div.card > a.btn``) contain dots too.
    """

    def __init__(self, store: PageObjectStore | None = None):
        self.store = store

    async def resolve(self, selector: str | None) -> str | None:
        if not selector or '.' not in selector or self.store is None:
            return selector

        page_name, _, selector_name = selector.partition('.')
        if not page_name or not selector_name:
            return selector

        try:
            concrete = await self.store.lookup(page_name, selector_name)
        except Exception as e:
            # Lookup problems must not fail the step, the literal may still work
            logger.warning("POM resolution failed for '%s': %s", selector, e)
            return selector

        if concrete:
            logger.info("Resolved POM: %s -> %s", selector, concrete)
            return concrete
        return selector
