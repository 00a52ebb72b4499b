"""
Page metadata store — DocumentPage rows keyed by (document_id, page_number).

Writes are upserts: reconversion legitimately overwrites earlier results,
so a duplicate (document, page) bumps the row's version instead of failing.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.base import as_utc, new_uuid, utcnow
from ..models.document import Document
from ..models.document_page import DocumentPage

logger = logging.getLogger(__name__)

DEFAULT_BLANK_THRESHOLD = 10_000


@dataclass
class PageStats:
    count: int
    total_bytes: int
    blank_pages: list[int]
    expired_pages: list[int]
    page_numbers: list[int] = field(default_factory=list)

    @property
    def average_bytes(self) -> float:
        return self.total_bytes / self.count if self.count else 0.0


def cache_key_for(document_id: str, page_number: int, version: int = 1) -> str:
    return f"doc:{document_id}:page:{page_number}:v{version}"


class PageStore:
    def __init__(self, db: AsyncSession, blank_threshold: int = DEFAULT_BLANK_THRESHOLD):
        self.db = db
        self.blank_threshold = blank_threshold

    # ── Reads ────────────────────────────────────────────────────────

    async def list_pages(self, document_id: str) -> list[DocumentPage]:
        """All pages of a document, page_number ascending. Fresh query every call."""
        result = await self.db.execute(
            select(DocumentPage)
            .where(DocumentPage.document_id == document_id)
            .order_by(DocumentPage.page_number.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_page(self, document_id: str, page_number: int) -> Optional[DocumentPage]:
        result = await self.db.execute(
            select(DocumentPage)
            .where(
                DocumentPage.document_id == document_id,
                DocumentPage.page_number == page_number,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def count_pages(self, document_id: str) -> int:
        result = await self.db.execute(
            select(func.count())
            .select_from(DocumentPage)
            .where(DocumentPage.document_id == document_id)
        )
        return result.scalar_one()

    def is_blank(self, page: DocumentPage) -> bool:
        return (page.file_size or 0) < self.blank_threshold

    def is_expired(self, page: DocumentPage, now: Optional[datetime] = None) -> bool:
        if page.cache_expires_at is None:
            return False
        return as_utc(page.cache_expires_at) <= (now or utcnow())

    async def blank_pages(self, document_id: str) -> list[DocumentPage]:
        result = await self.db.execute(
            select(DocumentPage)
            .where(
                DocumentPage.document_id == document_id,
                DocumentPage.file_size < self.blank_threshold,
            )
            .order_by(DocumentPage.page_number.asc())
        )
        return list(result.scalars().all())

    async def page_stats(self, document_id: str) -> PageStats:
        pages = await self.list_pages(document_id)
        now = utcnow()
        return PageStats(
            count=len(pages),
            total_bytes=sum(p.file_size or 0 for p in pages),
            blank_pages=[p.page_number for p in pages if self.is_blank(p)],
            expired_pages=[p.page_number for p in pages if self.is_expired(p, now)],
            page_numbers=[p.page_number for p in pages],
        )

    def is_complete(self, document: Document, page_numbers: list[int]) -> bool:
        """Converted all the way through: one row for every page 1..page_count."""
        if not document.processed or not document.page_count:
            return False
        return page_numbers == list(range(1, document.page_count + 1))

    async def has_valid_pages(self, document_id: str) -> bool:
        """
        True only for a completely converted document whose pages are
        neither blank nor expired. A conversion that died halfway leaves
        some rows behind; those don't count.
        """
        document = await self.db.get(Document, document_id, populate_existing=True)
        if document is None:
            return False
        stats = await self.page_stats(document_id)
        return (
            self.is_complete(document, stats.page_numbers)
            and not stats.blank_pages
            and not stats.expired_pages
        )

    # ── Writes ───────────────────────────────────────────────────────

    async def upsert_page(
        self,
        document_id: str,
        page_number: int,
        *,
        page_url: str,
        file_size: int,
        format: str,
        cache_expires_at: Optional[datetime],
        storage_path: Optional[str] = None,
        width: Optional[int] = None,
        height: Optional[int] = None,
        generation_method: str = "pdfplumber",
        quality: Optional[int] = None,
        cache_key: Optional[str] = None,
    ) -> DocumentPage:
        now = utcnow()
        fields = {
            "page_url": page_url,
            "storage_path": storage_path,
            "file_size": file_size,
            "format": format,
            "width": width,
            "height": height,
            "generation_method": generation_method,
            "quality": quality,
            "cache_key": cache_key or cache_key_for(document_id, page_number),
            "cache_expires_at": cache_expires_at,
            "updated_at": now,
        }

        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            return await self._upsert_generic(document_id, page_number, fields)

        stmt = insert(DocumentPage).values(
            id=new_uuid(),
            document_id=document_id,
            page_number=page_number,
            hit_count=0,
            version=1,
            created_at=now,
            **fields,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["document_id", "page_number"],
            set_={**fields, "version": DocumentPage.version + 1},
        )
        await self.db.execute(stmt)

        page = await self.get_page(document_id, page_number)
        logger.debug("Upserted page %s/%d (v%d, %d bytes)", document_id, page_number, page.version, file_size)
        return page

    async def _upsert_generic(self, document_id: str, page_number: int, fields: dict) -> DocumentPage:
        page = await self.get_page(document_id, page_number)
        if page is None:
            page = DocumentPage(document_id=document_id, page_number=page_number, version=1, hit_count=0, **fields)
            self.db.add(page)
        else:
            for key, value in fields.items():
                setattr(page, key, value)
            page.version += 1
        await self.db.flush()
        return page

    async def invalidate(self, document_id: str) -> int:
        """Delete every page row of a document so the next access reconverts."""
        result = await self.db.execute(
            delete(DocumentPage).where(DocumentPage.document_id == document_id)
        )
        await self.db.flush()
        logger.info("Invalidated %d page(s) of document %s", result.rowcount, document_id)
        return result.rowcount

    async def record_hit(self, page: DocumentPage) -> None:
        await self.db.execute(
            update(DocumentPage)
            .where(DocumentPage.id == page.id)
            .values(hit_count=DocumentPage.hit_count + 1, last_accessed_at=utcnow())
        )

    async def update_url(self, page: DocumentPage, page_url: str) -> None:
        """Store a freshly signed URL."""
        await self.db.execute(
            update(DocumentPage)
            .where(DocumentPage.id == page.id)
            .values(page_url=page_url, updated_at=utcnow())
        )
        page.page_url = page_url
