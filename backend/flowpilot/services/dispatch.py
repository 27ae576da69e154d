"""Entry points that start flow runs, suites and workflow runs."""

import asyncio
import logging
import uuid
from functools import lru_cache
from typing import Any, Callable, Optional

from pydantic import ValidationError

from flowpilot.config import get_settings
from flowpilot.db.postgres import AsyncSessionLocal
from flowpilot.errors import GraphIntegrityError, WorkflowNotFound
from flowpilot.schemas.flow import FlowResult, SuiteFlowResult, SuiteResult, SuiteSummary
from flowpilot.schemas.step import Step
from flowpilot.schemas.workflow import WorkflowDefinition
from flowpilot.services.datasets import DatasetProvider
from flowpilot.services.flow_loader import FlowLoader, LoadedFlow
from flowpilot.services.functions import FunctionRegistry, FunctionStore
from flowpilot.services.http_client import WebhookClient
from flowpilot.services.run_manager import RunRegistry, run_registry
from flowpilot.services.run_store import RunStore, SqlRunStore
from flowpilot.services.selector_resolver import SelectorResolver, SqlPageObjectStore
from flowpilot.services.test_runner import FlowRunner
from flowpilot.services.workflow_engine import WorkflowEngine

logger = logging.getLogger(__name__)


class Dispatcher:
    """Wires runners and engines to a run store and the run registry."""

    def __init__(
        self,
        store: RunStore,
        runner_factory: Optional[Callable[[], FlowRunner]] = None,
        flow_loader: Optional[FlowLoader] = None,
        datasets: Optional[DatasetProvider] = None,
        functions: Optional[FunctionStore] = None,
        webhook_client: Optional[WebhookClient] = None,
        registry: Optional[RunRegistry] = None,
    ):
        self.store = store
        self.runner_factory = runner_factory or FlowRunner
        self.flow_loader = flow_loader or FlowLoader()
        self.datasets = datasets or DatasetProvider()
        self.functions = functions or FunctionRegistry()
        self.webhook_client = webhook_client or WebhookClient()
        self.registry = registry if registry is not None else run_registry

    async def run_flow(
        self,
        steps: list[Step | dict],
        variables: Optional[dict] = None,
        flow_id: Optional[str] = None,
        flow_name: Optional[str] = None,
        run_key: Optional[str] = None,
    ) -> FlowResult:
        """Run a flow to completion and persist it as a flow run."""
        record = await self.store.create_flow_run(flow_id, flow_name)
        runner = self.runner_factory()
        runner.run_id = record.id
        key = run_key or f"flow-{record.id}"

        with self.registry.track(key, runner):
            result = await runner.run(steps, variables or {})

        await self.store.finish_flow_run(record.id, result)
        logger.info("Flow run %s finished: %s", record.id, result.status)
        return result.model_copy(update={"run_id": record.id})

    async def run_suite(self, flows: list[LoadedFlow], concurrency: Optional[int] = None) -> SuiteResult:
        """Run several flows, at most ``concurrency`` at a time. Results keep input order."""
        limit = max(1, concurrency or get_settings().suite_concurrency)
        semaphore = asyncio.Semaphore(limit)

        async def run_one(flow: LoadedFlow) -> SuiteFlowResult:
            async with semaphore:
                key = f"suite-{flow.name}-{uuid.uuid4().hex[:8]}"
                try:
                    result = await self.run_flow(
                        flow.steps, flow_id=flow.flow_id, flow_name=flow.name, run_key=key
                    )
                except Exception as e:
                    logger.exception("Suite flow %s crashed", flow.name)
                    return SuiteFlowResult(name=flow.name, success=False, status="failed", error=str(e))
                return SuiteFlowResult(
                    name=flow.name,
                    success=result.success,
                    status=result.status,
                    duration_ms=result.duration_ms,
                    error=result.error,
                )

        logger.info("Running suite of %d flow(s), concurrency %d", len(flows), limit)
        results = await asyncio.gather(*(run_one(flow) for flow in flows))
        passed = sum(1 for r in results if r.success)
        return SuiteResult(
            results=list(results),
            summary=SuiteSummary(total=len(results), passed=passed, failed=len(results) - passed),
        )

    def build_engine(
        self,
        definition: WorkflowDefinition | dict,
        workflow_id: Optional[str] = None,
        inputs: Optional[dict[str, Any]] = None,
        trigger_type: str = "manual",
    ) -> WorkflowEngine:
        if isinstance(definition, dict):
            try:
                definition = WorkflowDefinition.model_validate(definition)
            except ValidationError as e:
                raise GraphIntegrityError(f"Invalid workflow definition: {e}") from e

        return WorkflowEngine(
            definition,
            self.store,
            workflow_id=workflow_id,
            inputs=inputs,
            trigger_type=trigger_type,
            runner_factory=self.runner_factory,
            flow_loader=self.flow_loader,
            datasets=self.datasets,
            functions=self.functions,
            webhook_client=self.webhook_client,
            registry=self.registry,
        )

    async def start_workflow(
        self,
        identifier: Optional[str] = None,
        definition: WorkflowDefinition | dict | None = None,
        inputs: Optional[dict[str, Any]] = None,
        trigger_type: str = "manual",
    ) -> WorkflowEngine:
        """
        Start a workflow run in the background and return its engine.

        Either ``identifier`` (stored workflow id or name) or an ad-hoc
        ``definition`` is required. Raises WorkflowNotFound or
        GraphIntegrityError before any run record exists.
        """
        workflow_id = None
        if definition is None:
            if not identifier:
                raise WorkflowNotFound("Missing workflow id or name")
            stored = await self.store.get_workflow(identifier)
            if stored is None:
                raise WorkflowNotFound(f"Workflow '{identifier}' not found")
            definition, workflow_id = stored.definition, stored.id

        engine = self.build_engine(definition, workflow_id, inputs, trigger_type)
        await engine.start()
        return engine


def _sql_runner_factory() -> FlowRunner:
    return FlowRunner(selector_resolver=SelectorResolver(SqlPageObjectStore(AsyncSessionLocal)))


@lru_cache
def get_dispatcher() -> Dispatcher:
    """Database-backed dispatcher used by the API."""
    return Dispatcher(
        store=SqlRunStore(AsyncSessionLocal),
        runner_factory=_sql_runner_factory,
        flow_loader=FlowLoader(session_factory=AsyncSessionLocal),
        datasets=DatasetProvider(session_factory=AsyncSessionLocal),
        functions=FunctionRegistry(session_factory=AsyncSessionLocal),
    )
