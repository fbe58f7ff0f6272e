from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import router as api_router
from .core.config import get_settings
from .core.logging import configure_logging, get_logger
from .orchestration.core import Orchestrator

settings = get_settings()
configure_logging(settings.observability.log_level)
logger = get_logger(name=__name__)


@asynccontextmanager
async def app_lifespan(app: FastAPI):
    orchestrator = getattr(app.state, "orchestrator", None) or Orchestrator(settings)
    app.state.orchestrator = orchestrator
    await orchestrator.start()
    try:
        yield
    finally:
        await orchestrator.stop()


def create_app(orchestrator: Orchestrator | None = None) -> FastAPI:
    application = FastAPI(title="toolweave", version="0.1.0", lifespan=app_lifespan)
    if orchestrator is not None:
        application.state.orchestrator = orchestrator
    application.include_router(api_router, prefix=settings.api_prefix)
    return application


app = create_app()
