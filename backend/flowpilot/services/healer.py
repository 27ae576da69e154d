"""Self-healing fallback for click/type steps whose locator no longer matches."""

import logging
import string
from dataclasses import dataclass
from typing import Optional

from flowpilot.config import get_settings
from flowpilot.errors import LocatorNotFound
from flowpilot.schemas.step import Step, INTERACTIVE_ACTIONS
from flowpilot.services.browser import BrowserSession

logger = logging.getLogger(__name__)

# Words of this length or shorter are ignored
MIN_TOKEN_LENGTH = 3


@dataclass
class HealingSuggestion:
    """A replacement locator derived from a step's description."""
    original_selector: str
    suggested_selector: str
    token: str

    def to_dict(self) -> dict:
        return {
            "original_selector": self.original_selector,
            "suggested_selector": self.suggested_selector,
            "token": self.token,
        }


class HealerConfig:
    """Configuration for the healer."""
    def __init__(self, enabled: bool = True, min_token_length: int = MIN_TOKEN_LENGTH):
        self.enabled = enabled
        self.min_token_length = min_token_length

    @classmethod
    def from_env(cls) -> "HealerConfig":
        """Create config from environment/default settings."""
        return cls(enabled=get_settings().healing_enabled)


class Healer:
    """
    Derive a text locator from the step's human-readable description.

    "Click the Login button" yields the tokens ``Click``, ``Login`` and
    ``button``; the first one that matches a visible element's text becomes
    ``text=<token>``. First match wins, there is no scoring between
    candidates.
    """

    def __init__(self, config: Optional[HealerConfig] = None):
        self.config = config or HealerConfig.from_env()

    def should_heal(self, step: Step, error: Exception) -> bool:
        """Healing only applies to not-found failures of described click/type steps."""
        return (
            self.config.enabled
            and step.action in INTERACTIVE_ACTIONS
            and bool(step.description and step.description.strip())
            and isinstance(error, LocatorNotFound)
        )

    def tokenize(self, description: str) -> list[str]:
        tokens = []
        for word in description.split():
            word = word.strip(string.punctuation)
            if len(word) > self.config.min_token_length:
                tokens.append(word)
        return tokens

    async def suggest_fix(
        self, session: BrowserSession, step: Step, selector: str
    ) -> Optional[HealingSuggestion]:
        """Return a healed locator, or None if no token matches a visible element."""
        for token in self.tokenize(step.description or ""):
            try:
                visible = await session.is_text_visible(token)
            except Exception as e:
                logger.debug("Healing probe for '%s' failed: %s", token, e)
                continue
            if visible:
                logger.info("Healing found element by text: '%s'", token)
                return HealingSuggestion(
                    original_selector=selector,
                    suggested_selector=f"text={token}",
                    token=token,
                )
        return None
