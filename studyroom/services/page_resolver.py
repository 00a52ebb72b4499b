"""
Serving layer — answers "give me page N of document D".

    record present & servable  → return its URL (re-signed if needed)
    missing / expired / blank  → convert the document, then resolve again
    URL check fails            → re-sign once, never reconvert

Viewers of a document someone else is converting get
ConversionInProgressError (HTTP 202) instead of blocking.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Optional

from ..core.config import Settings
from ..core.database import Database
from ..core.errors import (
    ConversionFailedError,
    ConversionInProgressError,
    DocumentUnavailableError,
    NotFoundError,
    URLResolutionError,
)
from ..core.flags import FeatureFlags
from ..core.retry import RetryPolicy
from ..core.storage import BlobStore
from ..models.document import Document
from ..models.document_page import DocumentPage
from .converter import RETRY_GENERATION_METHOD, ConversionOrchestrator
from .jobs import JobManager
from .page_store import PageStore
from .url_checker import UrlChecker

logger = logging.getLogger(__name__)

# One re-sign after the stored link fails its check
RESIGN_POLICY = RetryPolicy(max_attempts=2, base_delay=0.2, max_delay=1.0)


@dataclass
class PageDescriptor:
    page_number: int
    url: str
    width: Optional[int]
    height: Optional[int]
    file_size: int
    format: str
    blank_suspected: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


def is_storage_relative(url: str) -> bool:
    return not url.startswith(("http://", "https://", "/"))


class PageResolver:
    def __init__(
        self,
        database: Database,
        storage: BlobStore,
        orchestrator: ConversionOrchestrator,
        url_checker: UrlChecker,
        settings: Settings,
        flags: FeatureFlags,
        resign_policy: RetryPolicy = RESIGN_POLICY,
    ):
        self.database = database
        self.storage = storage
        self.orchestrator = orchestrator
        self.url_checker = url_checker
        self.settings = settings
        self.flags = flags
        self.resign_policy = resign_policy

    def _page_store(self, session) -> PageStore:
        return PageStore(session, self.settings.blank_page_threshold_bytes)

    # ── Public API ───────────────────────────────────────────────────

    async def resolve_page(self, document_id: str, page_number: int) -> PageDescriptor:
        pages = await self._ensure_pages(document_id)
        page = next((p for p in pages if p.page_number == page_number), None)
        if page is None:
            raise NotFoundError(f"Document {document_id} has no page {page_number} ({len(pages)} pages)")

        url = await self._servable_url(page)
        async with self.database.session() as session:
            await self._page_store(session).record_hit(page)
        return self._describe(page, url)

    async def list_page_descriptors(self, document_id: str) -> list[PageDescriptor]:
        """All pages with fresh links. Converts on first access."""
        pages = await self._ensure_pages(document_id)
        descriptors = []
        for page in pages:
            path = self._signable_path(page)
            if path is not None:
                url = await self._sign(path)
            else:
                url = page.page_url
            descriptors.append(self._describe(page, url))
        return descriptors

    # ── Convert path ─────────────────────────────────────────────────

    def _needs_conversion(self, store: PageStore, document: Document, pages: list[DocumentPage]) -> bool:
        # Rows left by a conversion that stopped halfway still need the rest
        if not store.is_complete(document, [p.page_number for p in pages]):
            return True
        for page in pages:
            if store.is_expired(page):
                return True
            # A page that is still blank after its high-DPI retry is served as-is
            if store.is_blank(page) and page.generation_method != RETRY_GENERATION_METHOD:
                return True
        return False

    async def _load_pages(self, document_id: str) -> tuple[list[DocumentPage], bool]:
        async with self.database.session() as session:
            document = await session.get(Document, document_id, populate_existing=True)
            if document is None:
                raise NotFoundError(f"Document {document_id} not found")
            active = await JobManager(session).get_active_job(document_id)
            if active is not None:
                raise ConversionInProgressError(document_id, active.progress, active.id)
            store = self._page_store(session)
            pages = await store.list_pages(document_id)
            return pages, self._needs_conversion(store, document, pages)

    async def _ensure_pages(self, document_id: str) -> list[DocumentPage]:
        pages, stale = await self._load_pages(document_id)
        if not stale:
            return pages

        if not self.flags.convert_on_view:
            raise DocumentUnavailableError(f"Document {document_id} has not been converted")

        logger.info("Document %s needs conversion (%d stored pages)", document_id, len(pages))
        try:
            await self.orchestrator.convert(document_id, wait=False)
        except ConversionFailedError as e:
            logger.error("Conversion on view failed for %s: %s", document_id, e.message)
            raise DocumentUnavailableError(e.message) from e

        pages, _ = await self._load_pages(document_id)
        if not pages:
            raise DocumentUnavailableError(f"Document {document_id} produced no pages")
        return pages

    # ── Serve path ───────────────────────────────────────────────────

    def _signable_path(self, page: DocumentPage) -> Optional[str]:
        if page.storage_path:
            return page.storage_path
        if is_storage_relative(page.page_url):
            return page.page_url
        return None

    async def _sign(self, path: str) -> str:
        return await self.storage.get_signed_url(
            path, self.settings.signed_url_ttl_seconds, self.settings.pages_bucket
        )

    async def _servable_url(self, page: DocumentPage) -> str:
        path = self._signable_path(page)
        stored = page.page_url
        if is_storage_relative(stored):
            stored = await self._sign(path)

        if not self.flags.validate_page_urls:
            if stored != page.page_url:
                await self._save_url(page, stored)
            return stored

        async def attempt(n: int) -> str:
            url = stored if n == 1 else await self._sign(path)
            await self.url_checker.check(url)
            return url

        # Without a storage path there is nothing to re-sign
        policy = self.resign_policy if path is not None else RetryPolicy(max_attempts=1)
        try:
            url = await policy.run(attempt, retry_on=(URLResolutionError,))
        except URLResolutionError as e:
            logger.error(
                "Page %d of %s unavailable after re-sign: %s",
                page.page_number, page.document_id, e.reason,
            )
            raise

        if url != page.page_url:
            logger.info("Re-signed page %d of %s", page.page_number, page.document_id)
            await self._save_url(page, url)
        return url

    async def _save_url(self, page: DocumentPage, url: str) -> None:
        async with self.database.session() as session:
            await self._page_store(session).update_url(page, url)

    def _describe(self, page: DocumentPage, url: str) -> PageDescriptor:
        return PageDescriptor(
            page_number=page.page_number,
            url=url,
            width=page.width,
            height=page.height,
            file_size=page.file_size,
            format=page.format,
            blank_suspected=page.file_size < self.settings.blank_page_threshold_bytes,
        )
