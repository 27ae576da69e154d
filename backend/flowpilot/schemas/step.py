from pydantic import BaseModel, ConfigDict, Field, AliasChoices, field_validator
from typing import Any, Literal


# Browser step types
StepAction = Literal[
    "goto",            # Navigate to value
    "click",           # Click selector
    "type",            # Fill selector with value
    "wait",            # Pause for value milliseconds
    "assertion",       # Page text contains value
    "api_request",     # selector = method, value = url, api_body = JSON body
    "api_assert",      # selector = "status" | "body", value = expected
    "visual_assert",   # Screenshot compared against stored baseline
]

# Actions that interact with a located element and may be healed
INTERACTIVE_ACTIONS = ("click", "type")


class Step(BaseModel):
    """One browser action. Frozen: substitution produces a copy."""
    model_config = ConfigDict(frozen=True)

    id: str = ""
    action: StepAction
    selector: str | None = None
    value: str | None = None
    description: str | None = None
    snapshot_name: str | None = Field(
        default=None, validation_alias=AliasChoices("snapshotName", "snapshot_name")
    )
    api_body: Any = Field(default=None, validation_alias=AliasChoices("apiBody", "api_body"))

    @field_validator("id", "selector", "value", mode="before")
    @classmethod
    def coerce_scalars(cls, v):
        # Recorded flows store numbers for wait durations and numeric ids
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v


class FlowRunRequest(BaseModel):
    steps: list[Step]
    data: dict[str, Any] = {}
    flow_name: str | None = None
