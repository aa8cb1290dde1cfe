# api_server/main.py
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from api_server.routers import health, runs, scheduler, triggers, workflows

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(message)s",
    datefmt="%H:%M:%S",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown events."""
    # Startup
    from api_server.db.engine import get_engine
    from api_server.services.scheduler import start_scheduler

    get_engine()
    start_scheduler()
    logger.info("API server started")

    yield

    # Shutdown
    from api_server.services.scheduler import stop_scheduler
    from automation.events import get_event_bus

    stop_scheduler()
    get_event_bus().close()
    logger.info("API server stopped")


app = FastAPI(
    title="Workflow Automation API",
    description="Workflow definitions, triggers and run execution",
    version="0.1.0",
    lifespan=lifespan,
)

# Register routers
app.include_router(health.router, tags=["health"])
app.include_router(workflows.router, prefix="/api/v1", tags=["workflows"])
app.include_router(runs.router, prefix="/api/v1", tags=["runs"])
app.include_router(triggers.router, prefix="/api/v1", tags=["triggers"])
app.include_router(scheduler.router, prefix="/api/v1", tags=["scheduler"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
