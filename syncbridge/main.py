"""Main FastAPI application"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from syncbridge.api import organizations, stats, sync, webhooks
from syncbridge.config import Settings, settings
from syncbridge.models.base import init_db
from syncbridge.scheduler import scheduler
from syncbridge.security import BasicAuthMiddleware

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reachable without basic auth. The inbound webhook checks its own per-organization secret.
OPEN_PATHS = {"/health", "/webhooks/incoming"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting SyncBridge for {settings.local_base_url or 'unconfigured local instance'}")
    init_db()
    scheduler.start()
    yield
    logger.info("Stopping SyncBridge")
    scheduler.stop()


def create_app(config: Settings = settings) -> FastAPI:
    """Build the API application; the scheduler only runs inside the lifespan."""
    application = FastAPI(
        title="SyncBridge",
        description="Synchronize issues from one tracker instance into many remote organizations",
        version="1.0.0",
        lifespan=lifespan,
    )

    if config.auth_enabled:
        if not config.auth_username or not config.auth_password:
            raise RuntimeError("AUTH_ENABLED=true requires AUTH_USERNAME and AUTH_PASSWORD to be set")
        application.add_middleware(
            BasicAuthMiddleware,
            username=config.auth_username,
            password=config.auth_password,
            allow_paths=OPEN_PATHS,
        )

    for module in (organizations, sync, stats, webhooks):
        application.include_router(module.router)

    @application.get("/health")
    async def health_check():
        return {"status": "healthy", "service": "SyncBridge", "scheduler": scheduler.scheduler.running}

    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "syncbridge.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower(),
    )
