"""FastAPI application factory for Inkframe."""

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from inkframe.common.config import get_settings
from inkframe.common.logging import setup_logging
from inkframe.common.schemas import HealthResponse

logger = logging.getLogger(__name__)


def _first_validation_issue(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    loc = [str(part) for part in first.get("loc", ()) if part != "body"]
    message = first.get("msg", "invalid value")
    return f"{'.'.join(loc)}: {message}" if loc else message


def create_app() -> FastAPI:
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        setup_logging(settings.log_level)
        from inkframe.deps import get_db, get_image_client, get_object_storage
        db = get_db()
        await db.init()
        await db.create_all()
        logger.info("Inkframe %s started (%s)", settings.api_version, settings.environment)
        yield
        # Shutdown
        client = get_image_client()
        close = getattr(client, "close", None)
        if close is not None:
            await close()
        await get_object_storage().close()
        await db.close()

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"error": _first_validation_issue(exc), "code": "INVALID_REQUEST"},
        )

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(version=settings.api_version)

    # Mount routers
    from inkframe.generation.router import router as generation_router
    from inkframe.quota.router import router as quota_router
    from inkframe.stories.router import router as stories_router

    prefix = settings.api_prefix
    app.include_router(generation_router, prefix=prefix, tags=["generation"])
    app.include_router(quota_router, prefix=prefix, tags=["credits"])
    app.include_router(stories_router, prefix=prefix, tags=["stories"])

    # Locally stored images are served by the app itself.
    if settings.storage_backend == "local":
        Path(settings.storage_local_path).mkdir(parents=True, exist_ok=True)
        app.mount(
            "/images",
            StaticFiles(directory=settings.storage_local_path, check_dir=False),
            name="images",
        )

    return app
