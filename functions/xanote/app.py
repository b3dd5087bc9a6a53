"""
FastAPI application entry point.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from xanote.config import get_settings
from xanote.dependencies import get_backup_scheduler, get_database
from xanote.errors import NotInitializedError, NotInstalledError, TransientIOError
from xanote.routes import install_router, router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    db = get_database()
    await db.initialize()
    scheduler = get_backup_scheduler()
    await scheduler.update_schedule()
    try:
        yield
    finally:
        scheduler.stop()
        await db.close()


def create_app() -> FastAPI:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper())
    app = FastAPI(title="XA Note Backend", version="0.1.0", lifespan=lifespan)
    app.include_router(install_router, prefix=settings.api_prefix)
    app.include_router(router, prefix=settings.api_prefix)

    @app.exception_handler(NotInstalledError)
    async def _not_installed(request: Request, exc: NotInstalledError):
        return JSONResponse(
            status_code=503, content={"error": "NOT_INSTALLED", "redirect": "/install"}
        )

    @app.exception_handler(NotInitializedError)
    async def _not_initialized(request: Request, exc: NotInitializedError):
        return JSONResponse(status_code=503, content={"error": "NOT_INITIALIZED"})

    @app.exception_handler(TransientIOError)
    async def _backend_unavailable(request: Request, exc: TransientIOError):
        logger.warning("Backend unavailable: %s", exc)
        return JSONResponse(status_code=503, content={"error": "BACKEND_UNAVAILABLE"})

    return app


app = create_app()
