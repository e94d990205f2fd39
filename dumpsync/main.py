"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from dumpsync import __version__
from dumpsync.api.routes import admin_import, health
from dumpsync.core.config import Settings, get_settings
from dumpsync.core.logging import setup_logging
from dumpsync.services.import_service import ImportService

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, service: Optional[ImportService] = None) -> FastAPI:
    """Build the app. The import service is created once and owned by the lifespan."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup/shutdown lifecycle: import service management."""
        setup_logging(settings.log_level)
        logger.info("Starting %s (import enabled=%s)", settings.app_name, settings.import_enabled)
        svc = service if service is not None else ImportService(settings)
        app.state.import_service = svc
        svc.start()
        try:
            yield
        finally:
            svc.stop()

    app = FastAPI(title=settings.app_name, version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.include_router(health.router)
    app.include_router(admin_import.router, prefix="/api")
    return app


app = create_app()


def main() -> None:
    import uvicorn

    uvicorn.run("dumpsync.main:app", host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
