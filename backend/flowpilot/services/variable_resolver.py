"""Variable resolution for step templates."""

import re
import json
from typing import Any


class VariableResolver:
    """
    Resolves ${variable} patterns in strings with values from a run context.

    Supports:
    - Simple variables: ${username}
    - Nested paths: ${row.email}
    - Array access: ${users.0.name}

    Unknown variables are left in place as literal text.
    """

    VARIABLE_PATTERN = re.compile(r'\$\{([\w.\-]+)\}')

    def resolve(self, template: str | None, context: dict) -> str | None:
        """
        Resolve variables in a string template.

        Args:
            template: String containing ${variable} patterns
            context: Dictionary of variable values

        Returns:
            String with variables replaced by their values, None stays None
        """
        if template is None:
            return None

        if not isinstance(template, str):
            return str(template)

        def replacer(match: re.Match) -> str:
            value = self._get_value(match.group(1), context)
            if value is None:
                return match.group(0)
            if isinstance(value, (dict, list)):
                return json.dumps(value)
            return str(value)

        return self.VARIABLE_PATTERN.sub(replacer, template)

    def resolve_any(self, value: Any, context: dict) -> Any:
        """Resolve variables inside strings, dicts and lists, recursively."""
        if isinstance(value, str):
            return self.resolve(value, context)
        elif isinstance(value, dict):
            return {
                self.resolve(k, context) if isinstance(k, str) else k: self.resolve_any(v, context)
                for k, v in value.items()
            }
        elif isinstance(value, list):
            return [self.resolve_any(item, context) for item in value]
        else:
            return value

    def lookup(self, path: str, context: dict) -> Any:
        """Value at a dotted path, or None when any segment is missing."""
        return self._get_value(path, context)

    def _get_value(self, path: str, context: dict) -> Any:
        """
        Get value from context using dot notation.

        Examples:
            - "base_url" -> context["base_url"]
            - "row.email" -> context["row"]["email"]
            - "users.0.name" -> context["users"][0]["name"]
        """
        # A flat key containing dots wins over a nested lookup
        if path in context:
            return context[path]

        current: Any = context
        for part in path.split('.'):
            if isinstance(current, dict):
                if part not in current:
                    return None
                current = current[part]
            elif isinstance(current, list):
                try:
                    index = int(part)
                except ValueError:
                    return None
                if not 0 <= index < len(current):
                    return None
                current = current[index]
            else:
                return None

        return current
