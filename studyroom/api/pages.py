"""
Page viewing endpoints.

GET /v1/pages/{document_id}               — Page descriptors (converts on first view)
GET /v1/pages/{document_id}/{page_number} — Redirect to the page image
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Path
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from ..core.dependencies import get_resolver
from ..services.page_resolver import PageResolver

logger = logging.getLogger(__name__)

pages_router = APIRouter(prefix="/pages", tags=["pages"])


class PageOut(BaseModel):
    page_number: int
    url: str
    width: Optional[int] = None
    height: Optional[int] = None
    file_size: int
    format: str
    blank_suspected: bool = False


class PageListResponse(BaseModel):
    document_id: str
    page_count: int
    pages: list[PageOut]


@pages_router.get("/{document_id}", response_model=PageListResponse)
async def list_pages(document_id: str, resolver: PageResolver = Depends(get_resolver)):
    descriptors = await resolver.list_page_descriptors(document_id)
    return PageListResponse(
        document_id=document_id,
        page_count=len(descriptors),
        pages=[PageOut(**d.to_dict()) for d in descriptors],
    )


@pages_router.get("/{document_id}/{page_number}")
async def view_page(
    document_id: str,
    page_number: int = Path(..., ge=1),
    resolver: PageResolver = Depends(get_resolver),
):
    """Resolve one page and redirect the viewer to its (signed) image URL."""
    descriptor = await resolver.resolve_page(document_id, page_number)
    return RedirectResponse(descriptor.url, status_code=307)
