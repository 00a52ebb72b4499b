"""Shared fixtures for the page pipeline test suite.

Everything runs locally: SQLite (aiosqlite) in a temp dir, LocalStorage
under tmp_path, Redis off. PDFs are produced with Pillow's PDF writer.
"""

import io
import logging
import sys
import threading
import time
from typing import Iterable, Optional

import pytest
from PIL import Image

from studyroom.core.config import Settings
from studyroom.core.database import Database
from studyroom.core.flags import FeatureFlags
from studyroom.core.redis import NullPublisher
from studyroom.core.retry import RetryPolicy
from studyroom.core.storage import LocalStorage
from studyroom.models.base import new_uuid
from studyroom.models.document import Document
from studyroom.services.converter import ConversionOrchestrator
from studyroom.services.rasterizer import PDF_MAGIC, PageRasterizer, RenderedPage

logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
    force=True,
)


# ---------------------------------------------------------------------------
# PDF builders
# ---------------------------------------------------------------------------

def make_pdf(page_count: int = 3, blank_pages: tuple[int, ...] = (), size=(600, 800)) -> bytes:
    """A real PDF. Noise pages encode large; blank pages encode tiny."""
    images = []
    for n in range(1, page_count + 1):
        if n in blank_pages:
            images.append(Image.new("RGB", size, "white"))
        else:
            images.append(Image.effect_noise(size, 64).convert("RGB"))
    buf = io.BytesIO()
    images[0].save(buf, "PDF", save_all=True, append_images=images[1:], resolution=72)
    return buf.getvalue()


@pytest.fixture(scope="session")
def pdf_bytes() -> bytes:
    return make_pdf(3)


# ---------------------------------------------------------------------------
# Fake rasterizer
# ---------------------------------------------------------------------------

class FakePdf:
    def __init__(self, rasterizer: "FakeRasterizer", data: bytes):
        self.rasterizer = rasterizer
        self.data = data

    def __enter__(self):
        if not self.data.startswith(PDF_MAGIC):
            from studyroom.core.errors import InvalidFormatError

            raise InvalidFormatError("not a PDF")
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    @property
    def page_count(self) -> int:
        return self.rasterizer.page_count

    def render_page(self, page_number: int, dpi: Optional[int] = None) -> RenderedPage:
        r = self.rasterizer
        dpi = dpi or r.dpi
        with r.lock:
            r.render_calls.append((page_number, dpi))
            if page_number in r.broken_pages:
                raise RuntimeError(f"page {page_number} is damaged")
            if r.failures_left > 0:
                r.failures_left -= 1
                raise RuntimeError("render crashed")
        if r.delay:
            time.sleep(r.delay)

        if dpi == r.dpi:
            size = r.sizes.get(page_number, r.default_size)
        else:
            size = r.retry_sizes.get(page_number, r.default_size)
        return RenderedPage(
            page_number=page_number,
            data=b"\xff" * size,
            format=r.image_format,
            content_type=r.content_type,
            width=1200,
            height=1553,
            dpi=dpi,
        )


class FakeRasterizer(PageRasterizer):
    """Counts renders. Page sizes come from tables instead of real pixels.

    `failures` makes the next N renders crash; pages in `broken_pages` crash
    every time until removed.
    """

    def __init__(
        self,
        page_count: int = 3,
        sizes: Optional[dict[int, int]] = None,
        retry_sizes: Optional[dict[int, int]] = None,
        default_size: int = 120_000,
        failures: int = 0,
        broken_pages: Iterable[int] = (),
        delay: float = 0.0,
        dpi: int = 72,
    ):
        super().__init__(dpi=dpi)
        self.page_count = page_count
        self.sizes = sizes or {}
        self.retry_sizes = retry_sizes or {}
        self.default_size = default_size
        self.failures_left = failures
        self.broken_pages = set(broken_pages)
        self.delay = delay
        self.render_calls: list[tuple[int, int]] = []
        self.opens = 0
        self.lock = threading.Lock()

    def open(self, data: bytes) -> FakePdf:
        self.opens += 1
        return FakePdf(self, data)


class CountingStorage(LocalStorage):
    def __init__(self, settings: Settings):
        super().__init__(settings)
        self.uploads: list[str] = []

    async def upload(self, path, data, content_type, bucket):
        self.uploads.append(f"{bucket}/{path}")
        return await super().upload(path, data, content_type, bucket)


# ---------------------------------------------------------------------------
# Settings, database, storage
# ---------------------------------------------------------------------------

@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        env="test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'studyroom.db'}",
        local_storage_path=str(tmp_path / "blobs"),
        url_signing_secret="test-secret",
        public_base_url="",
        redis_url="",
        render_dpi=72,
        render_retry_dpi=100,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        conversion_timeout_seconds=30.0,
        job_poll_interval=0.05,
    )


@pytest.fixture
def flags() -> FeatureFlags:
    return FeatureFlags(
        use_s3=False,
        use_redis=False,
        validate_page_urls=True,
        convert_on_view=True,
        convert_on_upload=False,
    )


@pytest.fixture
async def database(settings):
    db = Database(settings)
    await db.create_all()
    yield db
    await db.close()


@pytest.fixture
def storage(settings) -> CountingStorage:
    return CountingStorage(settings)


@pytest.fixture
def rasterizer() -> FakeRasterizer:
    return FakeRasterizer()


@pytest.fixture
def make_orchestrator(database, storage, settings):
    def _make(rasterizer: PageRasterizer, **overrides) -> ConversionOrchestrator:
        s = settings.model_copy(update=overrides) if overrides else settings
        return ConversionOrchestrator(
            database,
            storage,
            rasterizer,
            NullPublisher(),
            s,
            retry_policy=RetryPolicy(max_attempts=3, base_delay=0.0, jitter=False),
        )

    return _make


@pytest.fixture
def orchestrator(make_orchestrator, rasterizer) -> ConversionOrchestrator:
    return make_orchestrator(rasterizer)


@pytest.fixture
def create_document(database, storage, settings):
    """Upload a source PDF and insert its Document row."""

    async def _create(
        data: bytes = b"%PDF-1.4 fake",
        user_id: str = "user-1",
        filename: str = "notes.pdf",
        content_type: str = "application/pdf",
        upload: bool = True,
    ) -> Document:
        doc_id = new_uuid()
        path = f"{user_id}/{doc_id}/{filename}"
        if upload:
            await storage.upload(path, data, content_type, settings.documents_bucket)
        async with database.session() as session:
            doc = Document(
                id=doc_id,
                user_id=user_id,
                title=filename,
                filename=filename,
                content_type=content_type,
                storage_path=path,
                file_size_bytes=len(data),
                processed=False,
            )
            session.add(doc)
        return doc

    return _create
