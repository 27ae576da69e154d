"""Workflow graph execution.

A workflow is a directed graph of typed nodes. Traversal starts at the single
``start`` node and walks outgoing edges depth-first using an explicit stack,
so loops over large datasets never grow the Python call stack. Each entered
node gets exactly one node execution record in the run store.
"""

import asyncio
import copy
import inspect
import json
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional, Union

from flowpilot.config import get_settings
from flowpilot.errors import (
    AbortRequested,
    GraphIntegrityError,
    NodeExecutionFailure,
)
from flowpilot.schemas.workflow import (
    HANDLE_BODY,
    HANDLE_DONE,
    HANDLE_FALSE,
    HANDLE_TRUE,
    ConditionNode,
    DelayNode,
    Edge,
    EndNode,
    FunctionNode,
    LoopNode,
    StartNode,
    TestNode,
    WebhookNode,
    WorkflowDefinition,
)
from flowpilot.services.datasets import DatasetProvider
from flowpilot.services.expressions import evaluate_condition
from flowpilot.services.flow_loader import FlowLoader
from flowpilot.services.functions import FunctionRegistry, FunctionStore
from flowpilot.services.http_client import WebhookClient
from flowpilot.services.run_manager import RunRegistry, run_registry
from flowpilot.services.run_store import RunStore
from flowpilot.services.test_runner import FlowRunner
from flowpilot.services.variable_resolver import VariableResolver

logger = logging.getLogger(__name__)

# Keeps fire-and-forget traversals referenced until they finish
_background_tasks: set[asyncio.Task] = set()

AnyNode = Union[StartNode, TestNode, ConditionNode, LoopNode, DelayNode, FunctionNode, WebhookNode, EndNode]

_MISSING = object()


def jsonable(value: Any) -> Any:
    """Copy of ``value`` restricted to JSON types, for persistence."""
    return json.loads(json.dumps(value, default=str))


@dataclass
class WorkflowGraph:
    nodes: dict[str, AnyNode]
    outgoing: dict[str, list[Edge]]
    start_id: str

    def targets(self, node_id: str, handles: Optional[tuple] = None) -> list[str]:
        edges = self.outgoing.get(node_id, [])
        if handles is not None:
            edges = [e for e in edges if e.source_handle in handles]
        return [e.target for e in edges]


def build_graph(definition: WorkflowDefinition) -> WorkflowGraph:
    """Index the definition and check it. Raises GraphIntegrityError."""
    nodes: dict[str, AnyNode] = {}
    for node in definition.nodes:
        if node.id in nodes:
            raise GraphIntegrityError(f"Duplicate node id '{node.id}'")
        nodes[node.id] = node

    starts = [n.id for n in definition.nodes if n.type == "start"]
    if len(starts) != 1:
        raise GraphIntegrityError(f"Workflow must have exactly one start node, found {len(starts)}")

    outgoing: dict[str, list[Edge]] = {node_id: [] for node_id in nodes}
    for edge in definition.edges:
        if edge.source not in nodes or edge.target not in nodes:
            raise GraphIntegrityError(
                f"Edge {edge.id or ''} {edge.source} -> {edge.target} references an unknown node"
            )
        outgoing[edge.source].append(edge)

    for node in definition.nodes:
        if node.type != "condition":
            continue
        handles = sorted(str(e.source_handle) for e in outgoing[node.id])
        if handles != [HANDLE_FALSE, HANDLE_TRUE]:
            raise GraphIntegrityError(
                f"Condition node '{node.id}' needs exactly one 'true' and one 'false' edge"
            )

    reached = {starts[0]}
    queue = deque([starts[0]])
    while queue:
        for edge in outgoing[queue.popleft()]:
            if edge.target not in reached:
                reached.add(edge.target)
                queue.append(edge.target)
    unreachable = sorted(set(nodes) - reached)
    if unreachable:
        raise GraphIntegrityError(f"Nodes not reachable from start: {', '.join(unreachable)}")

    return WorkflowGraph(nodes=nodes, outgoing=outgoing, start_id=starts[0])


@dataclass
class NodeOutcome:
    status: str = "passed"
    next_nodes: list[str] = field(default_factory=list)
    result: Optional[dict] = None
    logs: list[str] = field(default_factory=list)
    error: Optional[str] = None
    artifacts: list[str] = field(default_factory=list)
    halt: bool = False
    loop: Optional["_LoopFrame"] = None

    def log(self, message: str):
        timestamp = datetime.utcnow().isoformat(timespec="milliseconds") + "Z"
        self.logs.append(f"[{timestamp}] {message}")


@dataclass
class _Visit:
    node_id: str


@dataclass
class _LoopFrame:
    node_id: str
    item_name: str
    items: list
    body: list[str]
    done: list[str]
    saved: dict = field(default_factory=dict)
    index: int = 0


class WorkflowEngine:
    """
    Executes one run of a workflow definition.

    ``prepare()`` validates the graph and creates the pending run record;
    ``execute()`` traverses it. ``start()`` does both, running the traversal
    as a background task. Failures end up as the run's status and error
    message; only a malformed graph raises to the caller.
    """

    def __init__(
        self,
        definition: WorkflowDefinition | dict,
        store: RunStore,
        workflow_id: Optional[str] = None,
        inputs: Optional[dict] = None,
        trigger_type: str = "manual",
        runner_factory: Optional[Callable[[], FlowRunner]] = None,
        flow_loader: Optional[FlowLoader] = None,
        datasets: Optional[DatasetProvider] = None,
        functions: Optional[FunctionStore] = None,
        webhook_client: Optional[WebhookClient] = None,
        registry: Optional[RunRegistry] = None,
        max_node_visits: Optional[int] = None,
    ):
        if isinstance(definition, dict):
            definition = WorkflowDefinition.model_validate(definition)
        self.definition = definition
        self.store = store
        self.workflow_id = workflow_id
        self.trigger_type = trigger_type
        self.runner_factory = runner_factory or FlowRunner
        self.flow_loader = flow_loader or FlowLoader()
        self.datasets = datasets or DatasetProvider()
        self.functions = functions or FunctionRegistry()
        self.webhook_client = webhook_client or WebhookClient()
        self.registry = registry if registry is not None else run_registry
        self.max_node_visits = max_node_visits or get_settings().workflow_max_node_visits

        self.global_inputs: dict = dict(inputs or {})
        self.variables: dict = dict(self.global_inputs)
        self.last_output: Any = None
        self.node_outputs: dict[str, Any] = {}
        self.resolver = VariableResolver()

        self.graph: Optional[WorkflowGraph] = None
        self.run_id: Optional[str] = None
        self.status = "pending"
        self._sequence = 0
        self._active_runner: Optional[FlowRunner] = None
        self._aborted = False
        self._abort_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

        self._handlers = {
            "start": self._run_start,
            "test": self._run_test,
            "condition": self._run_condition,
            "loop": self._run_loop,
            "delay": self._run_delay,
            "function": self._run_function,
            "webhook": self._run_webhook,
            "end": self._run_end,
        }

    @property
    def run_key(self) -> str:
        return f"workflow-{self.run_id}"

    async def prepare(self) -> str:
        self.graph = build_graph(self.definition)
        record = await self.store.create_workflow_run(
            self.workflow_id, self.trigger_type, {"globalInputs": jsonable(self.global_inputs)}
        )
        self.run_id = record.id
        logger.info("Prepared workflow run %s (%s)", self.run_id, self.trigger_type)
        return self.run_id

    async def start(self) -> str:
        """Validate, create the run record and traverse in the background."""
        run_id = await self.prepare()
        self._task = asyncio.create_task(self.execute())
        _background_tasks.add(self._task)
        self._task.add_done_callback(_background_tasks.discard)
        return run_id

    async def run(self) -> str:
        """Validate, create the run record and traverse to completion."""
        await self.prepare()
        return await self.execute()

    async def wait(self) -> str:
        if self._task is not None:
            await self._task
        return self.status

    async def abort(self):
        if self._aborted:
            return
        self._aborted = True
        self._abort_event.set()
        logger.info("Abort requested for workflow run %s", self.run_id)
        runner = self._active_runner
        if runner is not None:
            await runner.abort()

    async def execute(self) -> str:
        if self.graph is None or self.run_id is None:
            raise RuntimeError("prepare() must be called before execute()")

        error: Optional[str] = None
        with self.registry.track(self.run_key, self):
            try:
                await self.store.update_workflow_run(self.run_id, "running")
                self.status = "running"
                await self._traverse()
                self.status = "aborted" if self._aborted else "completed"
            except AbortRequested:
                self.status = "aborted"
            except NodeExecutionFailure as e:
                self.status = "failed"
                error = e.message
            except Exception as e:
                logger.exception("Workflow run %s crashed", self.run_id)
                self.status = "failed"
                error = str(e) or e.__class__.__name__

            try:
                await self.store.update_workflow_run(
                    self.run_id, self.status, error_message=error, context_snapshot=self._snapshot()
                )
            except Exception:
                logger.exception("Could not persist final status of workflow run %s", self.run_id)

        logger.info("Workflow run %s finished: %s", self.run_id, self.status)
        return self.status

    async def _traverse(self):
        stack: list[Union[_Visit, _LoopFrame]] = [_Visit(self.graph.start_id)]
        visits = 0

        while stack:
            if self._aborted:
                raise AbortRequested()

            item = stack.pop()
            if isinstance(item, _LoopFrame):
                self._advance_loop(item, stack)
                continue

            visits += 1
            if visits > self.max_node_visits:
                raise NodeExecutionFailure(
                    f"Node visit limit ({self.max_node_visits}) exceeded, check the graph for cycles",
                    item.node_id,
                )

            node = self.graph.nodes[item.node_id]
            outcome = await self._enter(node)

            if outcome.loop is not None:
                self._advance_loop(outcome.loop, stack)
            for target in reversed(outcome.next_nodes):
                stack.append(_Visit(target))

    async def _enter(self, node: AnyNode) -> NodeOutcome:
        self._sequence += 1
        execution = await self.store.start_node_execution(
            self.run_id, node.id, node.type, self._sequence
        )

        try:
            outcome = await self._handlers[node.type](node)
        except AbortRequested:
            outcome = NodeOutcome(status="skipped", error="Execution aborted")
            await self._finish(execution.id, outcome)
            raise
        except Exception as e:
            outcome = NodeOutcome(status="failed", error=str(e) or e.__class__.__name__, halt=True)
            outcome.log(f"Node failed: {outcome.error}")

        await self._finish(execution.id, outcome)
        if outcome.halt:
            raise NodeExecutionFailure(f"Node '{node.id}' failed: {outcome.error}", node.id)
        return outcome

    async def _finish(self, execution_id: str, outcome: NodeOutcome):
        await self.store.finish_node_execution(
            execution_id,
            outcome.status,
            logs=outcome.logs,
            result=jsonable(outcome.result) if outcome.result is not None else None,
            error_message=outcome.error,
            artifacts=outcome.artifacts,
        )

    def _namespace(self) -> dict:
        return {
            **self.variables,
            "variables": self.variables,
            "lastOutput": self.last_output,
            "globalInputs": self.global_inputs,
            "nodes": self.node_outputs,
        }

    def _snapshot(self) -> dict:
        return jsonable({
            "globalInputs": self.global_inputs,
            "variables": self.variables,
            "lastOutput": self.last_output,
            "nodes": self.node_outputs,
        })

    async def _sleep(self, ms: int):
        try:
            await asyncio.wait_for(self._abort_event.wait(), timeout=ms / 1000)
        except asyncio.TimeoutError:
            return
        raise AbortRequested()

    # Node handlers

    async def _run_start(self, node: StartNode) -> NodeOutcome:
        return NodeOutcome(next_nodes=self.graph.targets(node.id))

    async def _run_end(self, node: EndNode) -> NodeOutcome:
        outcome = NodeOutcome()
        outcome.log("Branch finished")
        return outcome

    async def _run_test(self, node: TestNode) -> NodeOutcome:
        data = node.data
        outcome = NodeOutcome()

        if data.steps is not None:
            steps = data.steps
            outcome.log(f"Running inline flow '{data.label or node.id}' ({len(steps)} steps)")
        else:
            flow = await self.flow_loader.load(data.test_id)
            steps = flow.steps
            outcome.log(f"Running flow '{flow.name}' ({len(steps)} steps)")

        runner = self.runner_factory()
        runner.run_id = f"{self.run_id}-{node.id}-{self._sequence}"
        self._active_runner = runner
        try:
            with self.registry.track(f"{self.run_key}:{node.id}:{self._sequence}", runner):
                if self._aborted:
                    await runner.abort()
                result = await runner.run(steps, dict(self.variables))
        finally:
            self._active_runner = None

        output = {
            "success": result.success,
            "status": result.status,
            "duration_ms": result.duration_ms,
            "error": result.error,
        }
        self.last_output = output
        self.node_outputs[node.id] = output
        outcome.logs.extend(result.logs)
        outcome.artifacts.extend(result.artifacts)
        outcome.result = output

        if result.status == "aborted":
            # A stopped flow stops the workflow around it
            self._aborted = True
            self._abort_event.set()
            outcome.status = "skipped"
            return outcome

        if not result.success:
            outcome.status = "failed"
            outcome.error = result.error
            if not data.continue_on_error:
                outcome.halt = True
                return outcome
            outcome.log("Continuing after failure (continueOnError)")

        outcome.next_nodes = self.graph.targets(node.id)
        return outcome

    async def _run_condition(self, node: ConditionNode) -> NodeOutcome:
        expression = node.data.condition
        value = evaluate_condition(expression, self._namespace())
        branch = HANDLE_TRUE if value else HANDLE_FALSE

        outcome = NodeOutcome(
            result={"condition": expression, "result": value, "branch": branch},
            next_nodes=self.graph.targets(node.id, (branch,)),
        )
        outcome.log(f"Condition '{expression}' evaluated to {value}, taking '{branch}' branch")
        self.node_outputs[node.id] = value
        return outcome

    async def _run_loop(self, node: LoopNode) -> NodeOutcome:
        data = node.data
        if data.source_type == "dataset":
            items = await self.datasets.load(data.variable)
        else:
            items = self.resolver.lookup(data.variable, self.variables)
            if isinstance(items, str):
                try:
                    items = json.loads(items)
                except ValueError:
                    pass
            if items is None:
                raise NodeExecutionFailure(f"Loop variable '{data.variable}' is not set", node.id)
        if not isinstance(items, list):
            raise NodeExecutionFailure(
                f"Loop source '{data.variable}' is not a list ({type(items).__name__})", node.id
            )

        frame = _LoopFrame(
            node_id=node.id,
            item_name=data.item_name,
            items=list(items),
            body=self.graph.targets(node.id, (None, HANDLE_BODY)),
            done=self.graph.targets(node.id, (HANDLE_DONE,)),
            saved={
                data.item_name: self.variables.get(data.item_name, _MISSING),
                "loopIndex": self.variables.get("loopIndex", _MISSING),
            },
        )
        outcome = NodeOutcome(result={"source": data.variable, "items": len(items)}, loop=frame)
        outcome.log(f"Looping over {len(items)} item(s) from {data.source_type} '{data.variable}'")
        self.node_outputs[node.id] = {"items": len(items)}
        return outcome

    def _advance_loop(self, frame: _LoopFrame, stack: list):
        """Bind the next item and schedule the body, or restore and continue with 'done'."""
        if frame.index < len(frame.items):
            self.variables[frame.item_name] = frame.items[frame.index]
            self.variables["loopIndex"] = frame.index
            frame.index += 1
            stack.append(frame)
            for target in reversed(frame.body):
                stack.append(_Visit(target))
            return

        for key, value in frame.saved.items():
            if value is _MISSING:
                self.variables.pop(key, None)
            else:
                self.variables[key] = value
        for target in reversed(frame.done):
            stack.append(_Visit(target))

    async def _run_delay(self, node: DelayNode) -> NodeOutcome:
        duration = node.data.duration
        outcome = NodeOutcome(result={"duration": duration}, next_nodes=self.graph.targets(node.id))
        outcome.log(f"Waiting {duration} ms")
        await self._sleep(duration)
        return outcome

    async def _run_function(self, node: FunctionNode) -> NodeOutcome:
        name = node.data.function_name
        func = await self.functions.lookup(name)
        if func is None:
            raise NodeExecutionFailure(f"Function '{name}' not found", node.id)

        context = copy.deepcopy(self.variables)
        if inspect.iscoroutinefunction(func):
            value = await func(context)
        else:
            value = await asyncio.to_thread(func, context)
            if inspect.isawaitable(value):
                value = await value

        key = node.data.result_key or name
        self.variables[key] = value
        self.last_output = value
        self.node_outputs[node.id] = value

        outcome = NodeOutcome(result={"resultKey": key, "value": value}, next_nodes=self.graph.targets(node.id))
        outcome.log(f"Function '{name}' stored its result under '{key}'")
        return outcome

    async def _run_webhook(self, node: WebhookNode) -> NodeOutcome:
        data = node.data
        url = self.resolver.resolve(data.url, self.variables)
        headers = {k: self.resolver.resolve(v, self.variables) for k, v in data.headers.items()}

        response = await self.webhook_client.send(
            data.method, url, jsonable(self.variables), headers=headers, retries=data.retries
        )
        output = response.to_dict()
        self.last_output = output
        self.node_outputs[node.id] = output

        outcome = NodeOutcome(result=output, next_nodes=self.graph.targets(node.id))
        if response.ok:
            outcome.log(f"Webhook {data.method} {url} -> {response.status_code}")
        else:
            # Recorded as failed, traversal still continues
            outcome.status = "failed"
            outcome.error = response.error or f"Webhook returned HTTP {response.status_code}"
            outcome.log(f"Webhook {data.method} {url} failed: {outcome.error}")
            logger.warning("Webhook node %s failed: %s", node.id, outcome.error)
        return outcome
