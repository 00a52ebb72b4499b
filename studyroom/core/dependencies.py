"""
FastAPI dependencies. Injected into route handlers.

Clients live on app.state (built once in the factory); these helpers hand
them to routes and assemble the per-request services around them.
"""

from fastapi import Depends, Request

from .config import Settings
from .database import Database
from .flags import FeatureFlags
from .redis import RealtimePublisher
from .storage import BlobStore
from ..services.converter import ConversionOrchestrator
from ..services.page_resolver import PageResolver
from ..services.rasterizer import PageRasterizer
from ..services.url_checker import UrlChecker


def get_settings_dep(request: Request) -> Settings:
    return request.app.state.settings


def get_flags_dep(request: Request) -> FeatureFlags:
    return request.app.state.flags


def get_database(request: Request) -> Database:
    return request.app.state.database


def get_storage_dep(request: Request) -> BlobStore:
    """Returns the active storage backend (S3 or local)."""
    return request.app.state.storage


def get_publisher(request: Request) -> RealtimePublisher:
    return request.app.state.publisher


def get_url_checker(request: Request) -> UrlChecker:
    return request.app.state.url_checker


def get_rasterizer(request: Request) -> PageRasterizer:
    return request.app.state.rasterizer


def get_orchestrator(
    database: Database = Depends(get_database),
    storage: BlobStore = Depends(get_storage_dep),
    rasterizer: PageRasterizer = Depends(get_rasterizer),
    publisher: RealtimePublisher = Depends(get_publisher),
    settings: Settings = Depends(get_settings_dep),
) -> ConversionOrchestrator:
    return ConversionOrchestrator(database, storage, rasterizer, publisher, settings)


def get_resolver(
    database: Database = Depends(get_database),
    storage: BlobStore = Depends(get_storage_dep),
    orchestrator: ConversionOrchestrator = Depends(get_orchestrator),
    url_checker: UrlChecker = Depends(get_url_checker),
    settings: Settings = Depends(get_settings_dep),
    flags: FeatureFlags = Depends(get_flags_dep),
) -> PageResolver:
    return PageResolver(database, storage, orchestrator, url_checker, settings, flags)
