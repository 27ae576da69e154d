"""Error taxonomy for flow and workflow execution."""

from typing import Any, Optional


class FlowpilotError(Exception):
    """Base exception for all engine errors."""

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize error for logging/storage."""
        return {
            "type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
        }


class StepFailure(FlowpilotError):
    """A flow step failed (assertion, selector, timeout, API check)."""

    def __init__(self, message: str, step_id: str | None = None, action: str | None = None):
        super().__init__(message, {"step_id": step_id, "action": action})
        self.step_id = step_id
        self.action = action


class LocatorNotFound(StepFailure):
    """The browser could not find (or timed out waiting for) a locator."""

    def __init__(self, message: str, selector: str | None = None):
        super().__init__(message)
        self.selector = selector
        self.context["selector"] = selector


class GraphIntegrityError(FlowpilotError):
    """Malformed workflow definition. Raised before traversal begins."""


class NodeExecutionFailure(FlowpilotError):
    """A workflow node's action failed."""

    def __init__(self, message: str, node_id: str):
        super().__init__(message, {"node_id": node_id})
        self.node_id = node_id


class AbortRequested(FlowpilotError):
    """Cooperative cancellation was observed at a step/node boundary."""

    def __init__(self, message: str = "Execution aborted"):
        super().__init__(message)


class ExpressionError(FlowpilotError):
    """A condition expression was rejected or failed to evaluate."""


class WorkflowNotFound(FlowpilotError):
    """No stored workflow matches the given id or name."""
