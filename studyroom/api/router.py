"""
Main API router. Mounts all sub-routers.
"""

from fastapi import APIRouter

router = APIRouter()


# ── Health ───────────────────────────────────────────────────────────

@router.get("/health")
async def health():
    return {"status": "ok", "service": "studyroom-pages"}


# ── V1 routes ────────────────────────────────────────────────────────

from .documents import documents_router
from .pages import pages_router
from .blobs import blobs_router

router.include_router(documents_router, prefix="/v1")
router.include_router(pages_router, prefix="/v1")
router.include_router(blobs_router, prefix="/v1")
