import asyncio
import contextlib
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from nex_registry.core.dependencies import (
    get_db_manager,
    get_download_tracker,
    get_rating_aggregator,
    get_registry,
)
from nex_registry.domain.errors import RegistryError
from nex_registry.services.authentication import initialize_authentication
from nex_registry.services.maintenance import daily_maintenance_loop
from nex_registry.storage.db_manager import DuplicateKeyError, StorageError

LOG_LEVEL_ENV_VAR = "NEX_REGISTRY_LOG_LEVEL"
STATIC_DIR = Path(__file__).resolve().parent / "static"

# Configure logging
logging.basicConfig(
    level=os.environ.get(LOG_LEVEL_ENV_VAR, "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Load the store, normalise authentication storage and start the daily
    maintenance job; cancel the job on shutdown.
    """
    db = get_db_manager()
    initialize_authentication(db)
    config = db.get_repository_config()

    task = asyncio.create_task(
        daily_maintenance_loop(
            get_registry(),
            get_download_tracker(),
            get_rating_aggregator(),
            run_hour=config.maintenance_hour,
            run_minute=config.maintenance_minute,
        )
    )
    logger.info(
        f"Registry '{config.display_name}' started; maintenance runs daily at "
        f"{config.maintenance_hour:02d}:{config.maintenance_minute:02d}"
    )
    try:
        yield
    finally:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


async def registry_error_handler(request: Request, exc: RegistryError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


async def duplicate_key_handler(request: Request, exc: DuplicateKeyError) -> JSONResponse:
    logger.warning(f"{request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=409, content={"detail": "Conflict"})


async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    logger.error(f"Storage failure on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Storage failure"})


def create_app() -> FastAPI:
    """
    Build the application against the data directory currently configured
    through ``NEX_REGISTRY_DATA_DIR``.
    """
    config = get_db_manager().get_repository_config()

    app = FastAPI(
        title=config.display_name,
        version="0.1.0",
        description="Package registry for nex: publishing, download analytics and reviews.",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_allow_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_request(request: Request, call_next):
        logger.info(
            "request method=%s path=%s query=%s",
            request.method,
            request.url.path,
            request.url.query,
        )
        response = await call_next(request)
        logger.debug("response status=%s path=%s", response.status_code, request.url.path)
        return response

    app.add_exception_handler(RegistryError, registry_error_handler)
    app.add_exception_handler(DuplicateKeyError, duplicate_key_handler)
    app.add_exception_handler(StorageError, storage_error_handler)

    # Static files (CSS)
    app.mount("/static", StaticFiles(directory=str(STATIC_DIR)), name="static")

    @app.get("/health")
    async def health() -> dict:
        """
        Lightweight health check endpoint.
        """
        return {"status": "ok"}

    from nex_registry.api.auth import router as auth_router
    from nex_registry.api.frontend import router as frontend_router
    from nex_registry.api.packages import router as packages_router

    app.include_router(packages_router, prefix="/api/packages", tags=["packages"])
    app.include_router(auth_router, prefix="/api/auth", tags=["auth"])
    app.include_router(frontend_router, tags=["frontend"])
    logger.debug("Routers loaded")

    return app


app = create_app()


if __name__ == "__main__":
    """
    Allow running `python -m nex_registry.main` to start the Uvicorn
    development server.
    """
    import uvicorn

    uvicorn.run(
        "nex_registry.main:app",
        host="0.0.0.0",
        port=int(os.environ.get("NEX_REGISTRY_PORT", "8000")),
        reload=True,
    )
