import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from taskworker.stub.router import router as external_task_router
from taskworker.stub.service import InMemoryEngine

logger = logging.getLogger("stub_engine")


def create_app(engine: InMemoryEngine = None) -> FastAPI:
    """Serve an in-memory engine under /engine-rest, the path the worker's client expects."""
    engine = engine or InMemoryEngine()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info({"event": "stub_engine_startup"})
        yield
        logger.info({"event": "stub_engine_shutdown", "metrics": engine.metrics})

    app = FastAPI(lifespan=lifespan, title="In-memory External Task Engine")
    app.state.engine = engine
    app.include_router(external_task_router)
    return app
