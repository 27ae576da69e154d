"""Workflow graph definition.

Nodes are a closed union discriminated on ``type``; each kind carries its own
``data`` payload. Definitions saved by the graph editor use names such as
``testNode`` and camelCase data keys, both are accepted.
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Annotated, Any, Literal, Union

from flowpilot.schemas.step import Step

NodeType = Literal["start", "test", "condition", "loop", "delay", "function", "webhook", "end"]

EDITOR_NODE_TYPES = {
    "startNode": "start",
    "testNode": "test",
    "conditionNode": "condition",
    "loopNode": "loop",
    "delayNode": "delay",
    "functionNode": "function",
    "webhookNode": "webhook",
    "endNode": "end",
}

# Edge handles
HANDLE_TRUE = "true"
HANDLE_FALSE = "false"
HANDLE_BODY = "body"
HANDLE_DONE = "done"


class NodeData(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    label: str | None = None


class TestNodeData(NodeData):
    __test__ = False

    test_id: str | None = Field(default=None, alias="testId")
    steps: list[Step] | None = None
    continue_on_error: bool = Field(default=False, alias="continueOnError")

    @field_validator("test_id", mode="before")
    @classmethod
    def coerce_test_id(cls, v):
        if isinstance(v, int):
            return str(v)
        return v

    @model_validator(mode="after")
    def require_flow(self):
        if not self.test_id and self.steps is None:
            raise ValueError("test node needs a testId or inline steps")
        return self


class ConditionNodeData(NodeData):
    condition: str


class LoopNodeData(NodeData):
    source_type: Literal["variable", "dataset"] = Field(default="variable", alias="sourceType")
    variable: str
    item_name: str = Field(default="item", alias="itemName")


class DelayNodeData(NodeData):
    duration: int = 0  # ms

    @field_validator("duration", mode="before")
    @classmethod
    def coerce_duration(cls, v: Any) -> int:
        # Editors save an empty or cleared field as null or ""
        try:
            ms = int(float(v))
        except (TypeError, ValueError, OverflowError):
            return 0
        return max(0, ms)


class FunctionNodeData(NodeData):
    function_name: str = Field(alias="functionName")
    result_key: str | None = Field(default=None, alias="resultKey")


class WebhookNodeData(NodeData):
    url: str
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "POST"
    headers: dict[str, str] = {}
    retries: int = 0

    @field_validator("method", mode="before")
    @classmethod
    def upper_method(cls, v):
        return v.upper() if isinstance(v, str) else v


class _NodeBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str


class StartNode(_NodeBase):
    type: Literal["start"]
    data: NodeData = Field(default_factory=NodeData)


class TestNode(_NodeBase):
    __test__ = False

    type: Literal["test"]
    data: TestNodeData


class ConditionNode(_NodeBase):
    type: Literal["condition"]
    data: ConditionNodeData


class LoopNode(_NodeBase):
    type: Literal["loop"]
    data: LoopNodeData


class DelayNode(_NodeBase):
    type: Literal["delay"]
    data: DelayNodeData = Field(default_factory=DelayNodeData)


class FunctionNode(_NodeBase):
    type: Literal["function"]
    data: FunctionNodeData


class WebhookNode(_NodeBase):
    type: Literal["webhook"]
    data: WebhookNodeData


class EndNode(_NodeBase):
    type: Literal["end"]
    data: NodeData = Field(default_factory=NodeData)


WorkflowNode = Annotated[
    Union[StartNode, TestNode, ConditionNode, LoopNode, DelayNode, FunctionNode, WebhookNode, EndNode],
    Field(discriminator="type"),
]


class Edge(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str | None = None
    source: str
    target: str
    source_handle: str | None = Field(default=None, alias="sourceHandle")


class WorkflowDefinition(BaseModel):
    nodes: list[WorkflowNode]
    edges: list[Edge] = []

    @model_validator(mode="before")
    @classmethod
    def normalise_editor_types(cls, data: Any):
        if not isinstance(data, dict):
            return data
        nodes = []
        for node in data.get("nodes") or []:
            if isinstance(node, dict) and node.get("type") in EDITOR_NODE_TYPES:
                node = {**node, "type": EDITOR_NODE_TYPES[node["type"]]}
            nodes.append(node)
        return {**data, "nodes": nodes}


class WorkflowRunRequest(BaseModel):
    inputs: dict[str, Any] = {}


class WorkflowRunStarted(BaseModel):
    success: bool = True
    run_id: str
    message: str = "Workflow triggered successfully"
