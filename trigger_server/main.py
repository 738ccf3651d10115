# trigger_server/main.py
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from trigger_server.routers import data_streams, health, record_events, scheduled_triggers

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
    from trigger_server.db.engine import configure_engine
    from trigger_server.services.backfill import start_backfill_worker
    from trigger_server.services.processor import start_processor

    configure_engine()
    start_processor()
    start_backfill_worker()
    logger.info("Trigger server started")

    yield

    # Shutdown
    from trigger_server.db.engine import dispose_engine
    from trigger_server.services.backfill import stop_backfill_worker
    from trigger_server.services.processor import stop_processor

    stop_backfill_worker()
    stop_processor()
    dispose_engine()
    logger.info("Trigger server stopped")


app = FastAPI(
    title="Sheets Trigger API",
    description="Time-based triggers firing webhooks relative to record timestamps",
    version="0.1.0",
    lifespan=lifespan,
)

# Register routers
app.include_router(health.router, tags=["health"])
app.include_router(data_streams.router, prefix="/api/v1", tags=["data-streams"])
app.include_router(record_events.router, prefix="/api/v1", tags=["record-events"])
app.include_router(scheduled_triggers.router, prefix="/api/v1", tags=["scheduled-triggers"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
