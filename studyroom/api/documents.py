"""
Document endpoints.

POST   /v1/documents/upload               — Upload a PDF (optionally convert right away)
GET    /v1/documents                      — List documents
GET    /v1/documents/{id}                 — One document with its latest job
DELETE /v1/documents/{id}                 — Delete document, pages, jobs and blobs
POST   /v1/documents/{id}/convert         — Run the conversion pipeline
GET    /v1/documents/{id}/conversion      — Latest job progress
GET    /v1/conversion/metrics             — Queue and success metrics
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from pydantic import BaseModel
from sqlalchemy import select

from ..core.config import Settings
from ..core.database import Database
from ..core.dependencies import (
    get_database,
    get_flags_dep,
    get_orchestrator,
    get_rasterizer,
    get_settings_dep,
    get_storage_dep,
)
from ..core.errors import NotFoundError, PageServiceError
from ..core.flags import FeatureFlags
from ..core.storage import BlobStore
from ..models.base import new_uuid
from ..models.document import Document
from ..services.converter import ConversionOrchestrator
from ..services.jobs import JobManager
from ..services.page_store import PageStore
from ..services.rasterizer import PageRasterizer

logger = logging.getLogger(__name__)

documents_router = APIRouter(tags=["documents"])


class JobProgress(BaseModel):
    job_id: Optional[str] = None
    document_id: str
    status: str
    stage: Optional[str] = None
    progress: int = 0
    message: Optional[str] = None
    total_pages: int = 0
    processed_pages: int = 0
    retry_count: int = 0
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class DocumentResponse(BaseModel):
    id: str
    user_id: str
    title: Optional[str] = None
    filename: str
    content_type: str
    file_size_bytes: Optional[int] = None
    page_count: Optional[int] = None
    processed: bool = False
    created_at: Optional[datetime] = None
    latest_job: Optional[JobProgress] = None


class ConvertRequest(BaseModel):
    force: bool = False


class ConvertResponse(BaseModel):
    document_id: str
    success: bool
    page_count: int
    job_id: Optional[str] = None
    from_cache: bool = False
    processing_time_ms: int = 0
    blank_pages: list[int] = []


class MetricsResponse(BaseModel):
    queue_depth: int
    active_jobs: int
    recent_jobs: int
    success_rate: float
    failure_rate: float
    average_processing_time_ms: int


def _to_response(doc: Document, progress: Optional[dict] = None) -> DocumentResponse:
    return DocumentResponse(
        id=doc.id,
        user_id=doc.user_id,
        title=doc.title,
        filename=doc.filename,
        content_type=doc.content_type,
        file_size_bytes=doc.file_size_bytes,
        page_count=doc.page_count,
        processed=doc.processed,
        created_at=doc.created_at,
        latest_job=JobProgress(**progress) if progress else None,
    )


async def _get_document(session, document_id: str) -> Document:
    doc = await session.get(Document, document_id)
    if doc is None:
        raise NotFoundError(f"Document {document_id} not found")
    return doc


# ── Upload ───────────────────────────────────────────────────────────

@documents_router.post("/documents/upload", response_model=DocumentResponse)
async def upload_document(
    file: UploadFile = File(..., description="PDF to upload"),
    user_id: str = Form(...),
    title: Optional[str] = Form(None),
    convert: bool = Form(False),
    database: Database = Depends(get_database),
    storage: BlobStore = Depends(get_storage_dep),
    rasterizer: PageRasterizer = Depends(get_rasterizer),
    orchestrator: ConversionOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_settings_dep),
    flags: FeatureFlags = Depends(get_flags_dep),
):
    """
    Upload a PDF. Pages are produced later (first view or /convert)
    unless convert=true or FF_CONVERT_ON_UPLOAD is on.
    """
    filename = file.filename or "document.pdf"
    file_bytes = await file.read()

    if not file_bytes:
        raise HTTPException(status_code=400, detail="Empty file")
    max_bytes = settings.max_upload_size_mb * 1024 * 1024
    if len(file_bytes) > max_bytes:
        raise HTTPException(
            status_code=400,
            detail=f"File too large (max {settings.max_upload_size_mb}MB)",
        )

    # Fail fast on anything that isn't a readable PDF (raises InvalidFormatError)
    page_count = await asyncio.to_thread(rasterizer.validate, file_bytes)

    doc_id = new_uuid()
    path = f"{user_id}/{doc_id}/{filename}"
    await storage.upload(path, file_bytes, "application/pdf", settings.documents_bucket)

    async with database.session() as session:
        doc = Document(
            id=doc_id,
            user_id=user_id,
            title=title or filename,
            filename=filename,
            content_type="application/pdf",
            storage_path=path,
            file_size_bytes=len(file_bytes),
            processed=False,
        )
        session.add(doc)

    logger.info("Uploaded document %s: %s (%d bytes, %d pages)", doc_id, filename, len(file_bytes), page_count)

    if convert or flags.convert_on_upload:
        try:
            await orchestrator.convert(doc_id)
        except PageServiceError as e:
            # The upload itself succeeded; the job row records the failure
            logger.error("Conversion on upload failed for %s: %s", doc_id, e.message)

    async with database.session() as session:
        doc = await _get_document(session, doc_id)
        progress = await JobManager(session).get_progress(doc_id)
        return _to_response(doc, progress)


# ── Read / delete ────────────────────────────────────────────────────

@documents_router.get("/documents", response_model=list[DocumentResponse])
async def list_documents(
    user_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    database: Database = Depends(get_database),
):
    """List documents, newest first."""
    query = select(Document).order_by(Document.created_at.desc()).limit(limit).offset(offset)
    if user_id:
        query = query.where(Document.user_id == user_id)

    async with database.session() as session:
        result = await session.execute(query)
        docs = result.scalars().all()
    return [_to_response(d) for d in docs]


@documents_router.get("/documents/{document_id}", response_model=DocumentResponse)
async def get_document(document_id: str, database: Database = Depends(get_database)):
    async with database.session() as session:
        doc = await _get_document(session, document_id)
        progress = await JobManager(session).get_progress(document_id)
    return _to_response(doc, progress)


@documents_router.delete("/documents/{document_id}")
async def delete_document(
    document_id: str,
    database: Database = Depends(get_database),
    storage: BlobStore = Depends(get_storage_dep),
    settings: Settings = Depends(get_settings_dep),
):
    """Delete a document with its pages, jobs and stored files."""
    async with database.session() as session:
        doc = await _get_document(session, document_id)
        active = await JobManager(session).get_active_job(document_id)
        if active is not None:
            raise HTTPException(status_code=409, detail="Document is being converted")
        prefix = f"{doc.user_id}/{doc.id}"
        await session.delete(doc)

    removed = await storage.delete_prefix(prefix, settings.pages_bucket)
    removed += await storage.delete_prefix(prefix, settings.documents_bucket)
    logger.info("Deleted document %s (%d blobs)", document_id, removed)
    return {"status": "deleted", "id": document_id, "blobs_removed": removed}


# ── Conversion ───────────────────────────────────────────────────────

@documents_router.post("/documents/{document_id}/convert", response_model=ConvertResponse)
async def convert_document(
    document_id: str,
    request: Optional[ConvertRequest] = None,
    database: Database = Depends(get_database),
    orchestrator: ConversionOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_settings_dep),
):
    """
    Convert a document to page images.

    409 if a conversion is already running, or if the document is already
    fully converted and force is not set.
    """
    force = request.force if request else False

    async with database.session() as session:
        await _get_document(session, document_id)
        active = await JobManager(session).get_active_job(document_id)
        if active is not None:
            raise HTTPException(
                status_code=409,
                detail=f"Conversion already in progress ({active.progress}%)",
            )
        store = PageStore(session, settings.blank_page_threshold_bytes)
        if not force and await store.has_valid_pages(document_id):
            existing = await store.count_pages(document_id)
            raise HTTPException(
                status_code=409,
                detail=f"Document already has {existing} pages. Use force to reconvert.",
            )

    result = await orchestrator.convert(document_id, force=force)
    return ConvertResponse(
        document_id=document_id,
        success=result.success,
        page_count=result.page_count,
        job_id=result.job_id,
        from_cache=result.from_cache,
        processing_time_ms=result.processing_time_ms,
        blank_pages=result.blank_pages,
    )


@documents_router.get("/documents/{document_id}/conversion", response_model=JobProgress)
async def get_conversion_status(document_id: str, database: Database = Depends(get_database)):
    async with database.session() as session:
        await _get_document(session, document_id)
        progress = await JobManager(session).get_progress(document_id)
    if progress is None:
        return JobProgress(document_id=document_id, status="not_started")
    return JobProgress(**progress)


@documents_router.get("/conversion/metrics", response_model=MetricsResponse)
async def conversion_metrics(database: Database = Depends(get_database)):
    async with database.session() as session:
        metrics = await JobManager(session).get_metrics()
    return MetricsResponse(**metrics)
