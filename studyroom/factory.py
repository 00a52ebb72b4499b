"""
FastAPI application factory.
"""

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.config import Settings, get_settings
from .core.database import Database
from .core.errors import ConversionInProgressError, PageServiceError
from .core.flags import FeatureFlags, get_flags
from .core.redis import create_publisher
from .core.storage import create_storage
from .api.router import router
from .services.rasterizer import PageRasterizer
from .services.url_checker import UrlChecker

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def create_app(settings: Optional[Settings] = None, flags: Optional[FeatureFlags] = None) -> FastAPI:
    settings = settings or get_settings()
    flags = flags or get_flags()

    app = FastAPI(
        title="jStudyRoom Pages",
        description="PDF to page-image conversion and serving",
        version="1.0.0",
        docs_url="/docs" if settings.env == "development" else None,
        redoc_url="/redoc" if settings.env == "development" else None,
    )

    # ── CORS ─────────────────────────────────────────────────────
    origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Clients ──────────────────────────────────────────────────
    # Built here, closed on shutdown. Routes reach them through app.state.
    storage = create_storage(settings, flags)
    app.state.settings = settings
    app.state.flags = flags
    app.state.database = Database(settings)
    app.state.storage = storage
    app.state.publisher = create_publisher(settings, flags)
    app.state.url_checker = UrlChecker(storage, timeout=settings.url_check_timeout)
    app.state.rasterizer = PageRasterizer.from_settings(settings)

    # ── Startup ──────────────────────────────────────────────────
    @app.on_event("startup")
    async def on_startup():
        configure_logging(settings)
        logger.info("Starting jStudyRoom pages (env=%s)", settings.env)

        await app.state.database.create_all()

        logger.info(
            "Flags: s3=%s redis=%s validate_urls=%s convert_on_view=%s convert_on_upload=%s",
            flags.use_s3, flags.use_redis, flags.validate_page_urls,
            flags.convert_on_view, flags.convert_on_upload,
        )
        logger.info(
            "Rendering: %d DPI, %s q%d, fit %dx%d, %d parallel",
            settings.render_dpi, settings.image_format, settings.image_quality,
            settings.max_page_width, settings.max_page_height, settings.render_concurrency,
        )

    # ── Shutdown ─────────────────────────────────────────────────
    @app.on_event("shutdown")
    async def on_shutdown():
        await app.state.url_checker.close()
        await app.state.publisher.close()
        await app.state.storage.close()
        await app.state.database.close()
        logger.info("jStudyRoom pages shut down")

    # ── Errors ───────────────────────────────────────────────────
    @app.exception_handler(PageServiceError)
    async def page_service_error(request: Request, exc: PageServiceError):
        if exc.status_code >= 500:
            logger.error("%s %s failed (%s): %s", request.method, request.url.path, exc.code, exc.message)
        else:
            logger.info("%s %s → %s: %s", request.method, request.url.path, exc.code, exc.message)

        headers = {}
        if isinstance(exc, ConversionInProgressError):
            headers["Retry-After"] = "5"
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.code,
                "state": exc.user_state.value,
                "message": exc.public_message,
            },
            headers=headers,
        )

    # ── Routes ───────────────────────────────────────────────────
    app.include_router(router)

    return app
