"""
Conversion orchestrator — turns one uploaded PDF into stored page images.

Flow per document:
    claim job (unique active key) → download → validate → render pages
    (bounded parallel) → upload + upsert each page → complete

Fully converted documents are a no-op; one with pages missing from an
earlier failed run is converted again. A document someone else is
converting is waited on, never converted twice. Transient failures are
retried under the shared RetryPolicy with the job still holding the
document; structural ones (not a PDF, missing document or source file)
fail immediately. Pages stored before a failure stay in place.

Each DB step runs in its own short session so parallel page tasks never
share one.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError

from ..core.config import Settings
from ..core.database import Database
from ..core.errors import (
    BlankPageDetectedError,
    BlobNotFoundError,
    ConversionFailedError,
    ConversionInProgressError,
    ConversionTimeoutError,
    InvalidFormatError,
    NotFoundError,
)
from ..core.redis import RealtimePublisher
from ..core.retry import RetryPolicy
from ..core.storage import BlobStore
from ..models.base import utcnow
from ..models.conversion_job import ConversionJob, ConversionStage, ConversionStatus
from ..models.document import Document
from ..models.document_page import DocumentPage
from . import realtime
from .jobs import JobManager
from .page_store import PageStore, cache_key_for
from .rasterizer import OpenedPdf, PageRasterizer, RenderedPage

logger = logging.getLogger(__name__)

GENERATION_METHOD = "pdfplumber"
# Pages that were re-rendered at the retry DPI because they looked blank
RETRY_GENERATION_METHOD = "pdfplumber-hires"

STRUCTURAL_ERRORS = (InvalidFormatError, NotFoundError, BlobNotFoundError)

# How many times a lost claim race is re-tried before giving up
_CLAIM_ATTEMPTS = 3


@dataclass
class ConversionResult:
    success: bool
    page_count: int
    job_id: Optional[str] = None
    error: Optional[str] = None
    from_cache: bool = False
    processing_time_ms: int = 0
    blank_pages: list[int] = field(default_factory=list)


def page_storage_path(document: Document, page_number: int, image_format: str) -> str:
    return f"{document.user_id}/{document.id}/page-{page_number}.{image_format}"


class ConversionOrchestrator:
    def __init__(
        self,
        database: Database,
        storage: BlobStore,
        rasterizer: PageRasterizer,
        publisher: RealtimePublisher,
        settings: Settings,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.database = database
        self.storage = storage
        self.rasterizer = rasterizer
        self.publisher = publisher
        self.settings = settings
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)

    def _page_store(self, session) -> PageStore:
        return PageStore(session, self.settings.blank_page_threshold_bytes)

    # ── Entry point ──────────────────────────────────────────────────

    async def convert(self, document_id: str, force: bool = False, wait: bool = True) -> ConversionResult:
        """
        Convert every page of a document.

        With wait=False a conversion already owned by another worker raises
        ConversionInProgressError instead of blocking until it finishes.
        """
        started = time.monotonic()
        document = await self._load_document(document_id)

        if not force:
            cached = await self._cached_page_count(document_id)
            if cached is not None:
                logger.info("Document %s already has %d valid pages, skipping", document_id, cached)
                return ConversionResult(
                    success=True,
                    page_count=cached,
                    from_cache=True,
                    processing_time_ms=_elapsed_ms(started),
                )

        job, owned = await self._claim(document_id, force)
        if job is None:
            # Another worker finished between our check and the claim
            count = await self._cached_page_count(document_id) or 0
            return ConversionResult(success=True, page_count=count, from_cache=True,
                                    processing_time_ms=_elapsed_ms(started))

        if not owned:
            if not wait:
                raise ConversionInProgressError(document_id, job.progress, job.id)
            return await self._await_other(job, started)

        if force:
            async with self.database.session() as session:
                await self._page_store(session).invalidate(document_id)

        try:
            page_count, blank = await asyncio.wait_for(
                self._run_with_retries(document, job.id),
                timeout=self.settings.conversion_timeout_seconds,
            )
        except asyncio.TimeoutError:
            message = f"Conversion timed out after {self.settings.conversion_timeout_seconds:.0f}s"
            await self._mark_failed(document, job.id, message)
            raise ConversionTimeoutError(message)
        except asyncio.CancelledError:
            await asyncio.shield(self._mark_failed(document, job.id, "Conversion cancelled"))
            raise

        elapsed = _elapsed_ms(started)
        logger.info("Converted document %s: %d pages in %dms", document_id, page_count, elapsed)
        return ConversionResult(
            success=True,
            page_count=page_count,
            job_id=job.id,
            processing_time_ms=elapsed,
            blank_pages=blank,
        )

    async def invalidate(self, document_id: str) -> int:
        async with self.database.session() as session:
            return await self._page_store(session).invalidate(document_id)

    # ── Claiming ─────────────────────────────────────────────────────

    async def _load_document(self, document_id: str) -> Document:
        async with self.database.session() as session:
            document = await session.get(Document, document_id)
        if document is None:
            raise NotFoundError(f"Document {document_id} not found")
        return document

    async def _cached_page_count(self, document_id: str) -> Optional[int]:
        async with self.database.session() as session:
            store = self._page_store(session)
            if await store.has_valid_pages(document_id):
                return await store.count_pages(document_id)
        return None

    async def _claim(self, document_id: str, force: bool) -> tuple[Optional[ConversionJob], bool]:
        """
        Returns (job, owned). owned=False means another worker's job is active.
        (None, False) means valid pages appeared while we were deciding.
        """
        for _ in range(_CLAIM_ATTEMPTS):
            try:
                async with self.database.session() as session:
                    if not force and await self._page_store(session).has_valid_pages(document_id):
                        return None, False
                    job = await JobManager(session).open_job(document_id)
                return job, True
            except IntegrityError:
                logger.info("Document %s is already being converted", document_id)

            async with self.database.session() as session:
                active = await JobManager(session).get_active_job(document_id)
            if active is not None:
                return active, False
            # The other job finished between our insert and the lookup

        raise ConversionInProgressError(document_id)

    async def _await_other(self, job: ConversionJob, started: float) -> ConversionResult:
        """Poll another worker's job until it is terminal."""
        deadline = time.monotonic() + self.settings.conversion_timeout_seconds
        while True:
            async with self.database.session() as session:
                job = await JobManager(session).get_job(job.id)
                status = ConversionStatus(job.status)
                if status is ConversionStatus.COMPLETED:
                    count = await self._page_store(session).count_pages(job.document_id)
                    return ConversionResult(
                        success=True,
                        page_count=count,
                        job_id=job.id,
                        processing_time_ms=_elapsed_ms(started),
                    )
            if status is ConversionStatus.FAILED:
                raise ConversionFailedError(job.error_message or "conversion failed", job.retry_count + 1)
            if time.monotonic() >= deadline:
                raise ConversionTimeoutError(
                    f"Gave up waiting for job {job.id} after {self.settings.conversion_timeout_seconds:.0f}s"
                )
            await asyncio.sleep(self.settings.job_poll_interval)

    # ── Attempts ─────────────────────────────────────────────────────

    async def _run_with_retries(self, document: Document, job_id: str) -> tuple[int, list[int]]:
        async def attempt(n: int) -> tuple[int, list[int]]:
            return await self._run_attempt(document, job_id)

        async def requeue(n: int, error: BaseException) -> None:
            async with self.database.session() as session:
                job = await JobManager(session).requeue(job_id, _describe(error))
            await realtime.conversion_progress(self.publisher, document.user_id, job)

        try:
            return await self.retry_policy.run(
                attempt,
                give_up_on=STRUCTURAL_ERRORS,
                on_retry=requeue,
            )
        except STRUCTURAL_ERRORS as e:
            await self._mark_failed(document, job_id, _describe(e))
            raise
        except Exception as e:
            await self._mark_failed(document, job_id, _describe(e))
            raise ConversionFailedError(_describe(e), self.retry_policy.max_attempts) from e

    async def _run_attempt(self, document: Document, job_id: str) -> tuple[int, list[int]]:
        async with self.database.session() as session:
            job = await JobManager(session).start(job_id)
        await realtime.conversion_progress(self.publisher, document.user_id, job)

        if not document.is_pdf:
            raise InvalidFormatError(f"Document {document.id} is {document.content_type}, not a PDF")

        data = await self.storage.download(document.storage_path, self.settings.documents_bucket)
        logger.info("Downloaded %s (%d bytes) for document %s", document.storage_path, len(data), document.id)

        with self.rasterizer.open(data) as pdf:
            total = pdf.page_count
            async with self.database.session() as session:
                job = await JobManager(session).set_stage(job_id, ConversionStage.RENDERING, total_pages=total)
            await realtime.conversion_progress(self.publisher, document.user_id, job)

            semaphore = asyncio.Semaphore(max(1, self.settings.render_concurrency))

            async def process(page_number: int) -> Optional[int]:
                async with semaphore:
                    page = await self._render(pdf, page_number)
                    await self._store_page(document, job_id, page)
                    if page.size < self.settings.blank_page_threshold_bytes:
                        return page_number
                    return None

            results = await asyncio.gather(
                *(process(n) for n in range(1, total + 1)),
                return_exceptions=True,
            )

        failures = {n: r for n, r in enumerate(results, start=1) if isinstance(r, BaseException)}
        if failures:
            for n, error in failures.items():
                logger.error("Document %s page %d failed: %s", document.id, n, error)
            raise next(iter(failures.values()))

        blank = [n for n in results if n is not None]
        if blank:
            logger.warning("Document %s: pages %s still look blank after re-render", document.id, blank)

        await self._finalize(document, job_id, total)
        return total, blank

    def _check_not_blank(self, page: RenderedPage) -> None:
        threshold = self.settings.blank_page_threshold_bytes
        if page.size < threshold:
            raise BlankPageDetectedError([page.page_number], threshold)

    async def _render(self, pdf: OpenedPdf, page_number: int) -> RenderedPage:
        """Render one page. A page that looks blank gets one more try at a higher DPI."""
        page = await asyncio.to_thread(pdf.render_page, page_number)
        try:
            self._check_not_blank(page)
        except BlankPageDetectedError as e:
            logger.warning("%s, re-rendering at %d DPI", e.message, self.settings.render_retry_dpi)
            return await asyncio.to_thread(pdf.render_page, page_number, self.settings.render_retry_dpi)
        return page

    async def _store_page(self, document: Document, job_id: str, page: RenderedPage) -> None:
        path = page_storage_path(document, page.page_number, page.format)
        bucket = self.settings.pages_bucket
        await self.storage.upload(path, page.data, page.content_type, bucket)
        url = await self.storage.get_signed_url(path, self.settings.signed_url_ttl_seconds, bucket)

        method = GENERATION_METHOD if page.dpi <= self.rasterizer.dpi else RETRY_GENERATION_METHOD
        async with self.database.session() as session:
            stored = await self._page_store(session).upsert_page(
                document.id,
                page.page_number,
                page_url=url,
                storage_path=path,
                file_size=page.size,
                format=page.format,
                width=page.width,
                height=page.height,
                generation_method=method,
                quality=self.rasterizer.quality,
                cache_key=cache_key_for(document.id, page.page_number),
                cache_expires_at=utcnow() + timedelta(seconds=self.settings.page_cache_ttl_seconds),
            )
            job = await JobManager(session).increment_progress(job_id)

        logger.debug("Stored page %d of %s (v%d)", page.page_number, document.id, stored.version)
        await realtime.conversion_progress(self.publisher, document.user_id, job)

    async def _finalize(self, document: Document, job_id: str, total: int) -> None:
        async with self.database.session() as session:
            jobs = JobManager(session)
            await jobs.set_stage(job_id, ConversionStage.FINALIZING)
            # A previous, longer version of the file may have left extra rows
            await session.execute(
                delete(DocumentPage).where(
                    DocumentPage.document_id == document.id,
                    DocumentPage.page_number > total,
                )
            )
            job = await jobs.complete(job_id)
            row = await session.get(Document, document.id)
            row.processed = True
            row.page_count = total
        await realtime.conversion_completed(self.publisher, document.user_id, job)

    async def _mark_failed(self, document: Document, job_id: str, message: str) -> None:
        async with self.database.session() as session:
            job = await JobManager(session).fail(job_id, message)
        await realtime.conversion_failed(self.publisher, document.user_id, job)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _describe(error: BaseException) -> str:
    return str(error) or type(error).__name__
