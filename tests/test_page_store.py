from datetime import timedelta

import pytest

from studyroom.models.base import utcnow
from studyroom.models.document import Document
from studyroom.services.page_store import PageStore, cache_key_for


def _fields(size=120_000, fmt="jpg", expires_in=timedelta(days=7)):
    return {
        "page_url": "user-1/doc/page.jpg",
        "storage_path": "user-1/doc/page.jpg",
        "file_size": size,
        "format": fmt,
        "width": 1200,
        "height": 1553,
        "cache_expires_at": utcnow() + expires_in,
    }


@pytest.fixture
async def document(create_document):
    return await create_document(upload=False)


async def _mark_converted(database, document_id, page_count):
    async with database.session() as session:
        row = await session.get(Document, document_id)
        row.processed = True
        row.page_count = page_count


async def test_list_pages_sorted_regardless_of_write_order(database, document):
    async with database.session() as session:
        store = PageStore(session)
        for n in (3, 1, 2):
            await store.upsert_page(document.id, n, **_fields())

    async with database.session() as session:
        pages = await PageStore(session).list_pages(document.id)

    assert [p.page_number for p in pages] == [1, 2, 3]


async def test_upsert_overwrites_and_bumps_version(database, document):
    async with database.session() as session:
        store = PageStore(session)
        first = await store.upsert_page(document.id, 1, **_fields(size=50_000))
        assert first.version == 1
        second = await store.upsert_page(document.id, 1, **_fields(size=70_000, fmt="png"))

    async with database.session() as session:
        store = PageStore(session)
        assert await store.count_pages(document.id) == 1
        page = await store.get_page(document.id, 1)

    assert second.version == 2
    assert page.file_size == 70_000
    assert page.format == "png"
    assert page.cache_key == cache_key_for(document.id, 1)


async def test_file_size_and_format_read_back(database, document):
    async with database.session() as session:
        await PageStore(session).upsert_page(document.id, 1, **_fields(size=123_456, fmt="webp"))

    async with database.session() as session:
        page = await PageStore(session).get_page(document.id, 1)

    assert (page.file_size, page.format, page.width, page.height) == (123_456, "webp", 1200, 1553)


async def test_has_valid_pages_rules(database, document):
    await _mark_converted(database, document.id, 2)
    async with database.session() as session:
        store = PageStore(session, blank_threshold=10_000)
        assert await store.has_valid_pages(document.id) is False

        await store.upsert_page(document.id, 1, **_fields(size=4096))
        await store.upsert_page(document.id, 2, **_fields())
        assert await store.has_valid_pages(document.id) is False
        assert [p.page_number for p in await store.blank_pages(document.id)] == [1]

        await store.upsert_page(document.id, 1, **_fields(size=120_000))
        assert await store.has_valid_pages(document.id) is True

        await store.upsert_page(document.id, 2, **_fields(expires_in=timedelta(seconds=-5)))
        assert await store.has_valid_pages(document.id) is False

        stats = await store.page_stats(document.id)
        assert stats.expired_pages == [2]
        assert stats.blank_pages == []


async def test_missing_pages_make_the_document_incomplete(database, document):
    async with database.session() as session:
        store = PageStore(session)
        for n in (1, 2):
            await store.upsert_page(document.id, n, **_fields())
        # rows exist, but no conversion ever finished
        assert await store.has_valid_pages(document.id) is False

    await _mark_converted(database, document.id, 3)
    async with database.session() as session:
        store = PageStore(session)
        assert await store.has_valid_pages(document.id) is False
        await store.upsert_page(document.id, 3, **_fields())
        assert await store.has_valid_pages(document.id) is True


async def test_invalidate_removes_all_rows(database, document):
    async with database.session() as session:
        store = PageStore(session)
        for n in (1, 2):
            await store.upsert_page(document.id, n, **_fields())
        removed = await store.invalidate(document.id)

    async with database.session() as session:
        assert await PageStore(session).count_pages(document.id) == 0
    assert removed == 2


async def test_record_hit(database, document):
    async with database.session() as session:
        page = await PageStore(session).upsert_page(document.id, 1, **_fields())

    async with database.session() as session:
        store = PageStore(session)
        await store.record_hit(page)
        await store.record_hit(page)

    async with database.session() as session:
        page = await PageStore(session).get_page(document.id, 1)

    assert page.hit_count == 2
    assert page.last_accessed_at is not None
