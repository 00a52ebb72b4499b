from pathlib import Path

import pytest

from studyroom.core.errors import (
    ConversionFailedError,
    ConversionInProgressError,
    DocumentUnavailableError,
    NotFoundError,
    URLResolutionError,
)
from studyroom.services.jobs import JobManager
from studyroom.services.page_resolver import PageResolver
from studyroom.services.page_store import PageStore
from studyroom.services.url_checker import UrlChecker


@pytest.fixture
def make_resolver(database, storage, settings, flags, orchestrator):
    def _make(**flag_overrides) -> PageResolver:
        f = flags.model_copy(update=flag_overrides) if flag_overrides else flags
        return PageResolver(
            database,
            storage,
            orchestrator,
            UrlChecker(storage),
            settings,
            f,
        )

    return _make


@pytest.fixture
async def converted(orchestrator, create_document):
    doc = await create_document()
    await orchestrator.convert(doc.id)
    return doc


async def test_first_view_converts_the_document(make_resolver, rasterizer, create_document):
    doc = await create_document()

    descriptor = await make_resolver().resolve_page(doc.id, 2)

    assert descriptor.page_number == 2
    assert descriptor.url.startswith(f"/v1/blobs/document-pages/user-1/{doc.id}/page-2.jpg?")
    assert len(rasterizer.render_calls) == 3


async def test_serves_stored_page_and_counts_hits(database, make_resolver, rasterizer, converted):
    renders = len(rasterizer.render_calls)

    descriptor = await make_resolver().resolve_page(converted.id, 1)

    assert len(rasterizer.render_calls) == renders
    async with database.session() as session:
        page = await PageStore(session).get_page(converted.id, 1)
    assert page.hit_count == 1
    assert descriptor.url == page.page_url


async def test_expired_link_is_resigned_without_reconverting(database, storage, settings, make_resolver, rasterizer, converted):
    path = f"user-1/{converted.id}/page-1.jpg"
    expired = await storage.get_signed_url(path, -60, settings.pages_bucket)
    async with database.session() as session:
        store = PageStore(session)
        page = await store.get_page(converted.id, 1)
        await store.update_url(page, expired)
    renders = len(rasterizer.render_calls)

    descriptor = await make_resolver().resolve_page(converted.id, 1)

    assert descriptor.url != expired
    await storage.verify_url(descriptor.url)
    assert len(rasterizer.render_calls) == renders
    async with database.session() as session:
        page = await PageStore(session).get_page(converted.id, 1)
    assert page.page_url == descriptor.url


async def test_missing_file_surfaces_url_error(settings, make_resolver, rasterizer, converted):
    blob = Path(settings.local_storage_path) / settings.pages_bucket / "user-1" / converted.id / "page-1.jpg"
    blob.unlink()
    renders = len(rasterizer.render_calls)

    with pytest.raises(URLResolutionError) as exc:
        await make_resolver().resolve_page(converted.id, 1)

    assert exc.value.reason == URLResolutionError.NOT_FOUND
    assert len(rasterizer.render_calls) == renders


async def test_storage_relative_url_is_signed_on_serve(database, make_resolver, converted):
    async with database.session() as session:
        store = PageStore(session)
        page = await store.get_page(converted.id, 3)
        await store.update_url(page, page.storage_path)

    descriptor = await make_resolver(validate_page_urls=False).resolve_page(converted.id, 3)

    assert descriptor.url.startswith("/v1/blobs/")
    assert "signature=" in descriptor.url


async def test_page_out_of_range(make_resolver, converted):
    with pytest.raises(NotFoundError):
        await make_resolver().resolve_page(converted.id, 9)


async def test_unknown_document(make_resolver):
    with pytest.raises(NotFoundError):
        await make_resolver().list_page_descriptors("missing")


async def test_unconverted_document_without_convert_on_view(make_resolver, rasterizer, create_document):
    doc = await create_document()

    with pytest.raises(DocumentUnavailableError):
        await make_resolver(convert_on_view=False).resolve_page(doc.id, 1)
    assert rasterizer.render_calls == []


async def test_failed_conversion_is_unavailable_not_processing(make_resolver, rasterizer, create_document):
    rasterizer.failures_left = 10_000
    doc = await create_document()

    with pytest.raises(DocumentUnavailableError):
        await make_resolver().resolve_page(doc.id, 1)


async def test_active_job_reports_processing(database, make_resolver, create_document):
    doc = await create_document()
    async with database.session() as session:
        job = await JobManager(session).open_job(doc.id)

    with pytest.raises(ConversionInProgressError) as exc:
        await make_resolver().resolve_page(doc.id, 1)
    assert exc.value.job_id == job.id


async def test_list_page_descriptors(make_resolver, converted):
    descriptors = await make_resolver().list_page_descriptors(converted.id)

    assert [d.page_number for d in descriptors] == [1, 2, 3]
    assert all("signature=" in d.url for d in descriptors)
    assert all(d.file_size == 120_000 and not d.blank_suspected for d in descriptors)


async def test_page_left_out_by_a_failed_conversion_is_converted_on_view(orchestrator, make_resolver, rasterizer, create_document):
    rasterizer.broken_pages.add(3)
    doc = await create_document()
    with pytest.raises(ConversionFailedError):
        await orchestrator.convert(doc.id)
    rasterizer.broken_pages.clear()

    descriptor = await make_resolver().resolve_page(doc.id, 3)

    assert descriptor.page_number == 3
    assert descriptor.url.startswith(f"/v1/blobs/document-pages/user-1/{doc.id}/page-3.jpg?")
    descriptors = await make_resolver().list_page_descriptors(doc.id)
    assert [d.page_number for d in descriptors] == [1, 2, 3]
