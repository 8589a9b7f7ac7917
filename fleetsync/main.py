import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.responses import RedirectResponse

from fleetsync.core.config import get_settings
from fleetsync.core.database import init_db
from fleetsync.api import config, sync, history, historical_sync
from fleetsync.services.scheduler import start_scheduler, stop_scheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown events."""
    # Startup
    logging.basicConfig(
        level=get_settings().log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    await init_db()
    start_scheduler()
    yield
    # Shutdown
    stop_scheduler()


# Create FastAPI application
app = FastAPI(
    title="Fleet Telemetry Sync",
    description="Syncs live and historical vehicle telemetry from a telematics provider",
    version="0.1.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(config.router)
app.include_router(sync.router)
app.include_router(history.router)
app.include_router(historical_sync.router)


@app.get("/")
async def root():
    """Redirect root to the telemetry overview."""
    return RedirectResponse(url="/api/telemetry/overview")
