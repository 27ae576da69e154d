import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from flowpilot.api import tests, suites, workflows, webhooks, visual, schedules
from flowpilot.db.postgres import engine, Base
from flowpilot.logging_config import configure_logging
from flowpilot.services.dispatch import get_dispatcher
from flowpilot.services.run_manager import run_registry
import flowpilot.models  # noqa: F401  registers tables on Base.metadata

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()

    # Startup: create tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    # Shutdown: abort active runs so their browsers close
    stopped = await run_registry.stop_all()
    if stopped:
        logger.info("Stopped %d active run(s) on shutdown", stopped)
    await get_dispatcher().webhook_client.close()
    await engine.dispose()


app = FastAPI(
    title="Flowpilot API",
    description="Browser flow runner and workflow orchestration engine",
    version="0.1.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(tests.router, prefix="/api/tests", tags=["tests"])
app.include_router(suites.router, prefix="/api/suites", tags=["suites"])
app.include_router(workflows.router, prefix="/api/workflows", tags=["workflows"])
app.include_router(webhooks.router, prefix="/api/webhooks", tags=["webhooks"])
app.include_router(visual.router, prefix="/api/visual", tags=["visual"])
app.include_router(schedules.router, prefix="/api/schedules", tags=["schedules"])


@app.get("/health")
async def health():
    return {"status": "healthy", "active_runs": len(run_registry)}
