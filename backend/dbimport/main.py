"""FastAPI application bootstrap."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from dbimport.api.routers import health, imports, logs, mapping, tables, uploads
from dbimport.core.config import get_settings
from dbimport.db.session import init_db

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info("Import log and option tables ready")
    yield


def create_app(create_tables: bool = True) -> FastAPI:
    """Instantiate the FastAPI app and include top-level routers."""
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(
        title=settings.app_name,
        version="1.0.0",
        lifespan=lifespan if create_tables else None,
    )

    logger.info(f"[CORS] Allowed origins: {settings.cors_origins}")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition"],
    )

    app.include_router(health.router)
    app.include_router(uploads.router, prefix="/api/uploads", tags=["uploads"])
    app.include_router(tables.router, prefix="/api/tables", tags=["tables"])
    app.include_router(mapping.router, prefix="/api/mapping", tags=["mapping"])
    app.include_router(imports.router, prefix="/api/imports", tags=["imports"])
    app.include_router(logs.router, prefix="/api/logs", tags=["logs"])

    return app


app = create_app()
