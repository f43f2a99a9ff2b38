"""Main FastAPI application."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .config import settings
from .database import init_db, close_db
from .routers import monitoring_router
from .services.scheduler import SchedulerCoordinator

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    logger.info("Starting NodePulse")

    await init_db()
    logger.info("Database initialized")

    coordinator = SchedulerCoordinator()
    app.state.coordinator = coordinator
    coordinator.start()

    yield

    # Shutdown
    coordinator.stop()
    await close_db()
    logger.info("Shutdown complete")


def create_app(use_lifespan: bool = True) -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="NodePulse",
        description="Tiered SSH monitoring for homelab hosts, VMs and containers",
        version="1.0.0",
        lifespan=lifespan if use_lifespan else None,
    )

    app.include_router(monitoring_router)

    @app.get("/health")
    async def health_check():
        coordinator = getattr(app.state, "coordinator", None)
        return {
            "status": "healthy",
            "scheduler": bool(coordinator and coordinator.running),
        }

    return app


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.web_port)
