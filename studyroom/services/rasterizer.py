"""
PDF page rasterizer — pdfplumber renders, Pillow encodes.

Each page is rendered at the configured DPI, shrunk to fit the viewer box
(never enlarged) and encoded as JPEG/PNG/WebP. The encoded byte size is
reported per page so callers can apply the blank-page heuristic.

Rendering is blocking and CPU bound: call it through asyncio.to_thread.
pdfium is not thread-safe, so renders on one OpenedPdf are serialized by a lock.
"""

import io
import logging
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import pdfplumber
from PIL import Image

from ..core.config import Settings
from ..core.errors import InvalidFormatError

logger = logging.getLogger(__name__)

PDF_MAGIC = b"%PDF-"

# format key → (Pillow format, content type)
IMAGE_FORMATS = {
    "jpg": ("JPEG", "image/jpeg"),
    "png": ("PNG", "image/png"),
    "webp": ("WEBP", "image/webp"),
}


@dataclass
class RenderedPage:
    page_number: int
    data: bytes
    format: str
    content_type: str
    width: int
    height: int
    dpi: int

    @property
    def size(self) -> int:
        return len(self.data)


class PageRasterizer:
    def __init__(
        self,
        dpi: int = 150,
        image_format: str = "jpg",
        quality: int = 85,
        max_width: int = 1200,
        max_height: int = 1600,
    ):
        if image_format not in IMAGE_FORMATS:
            raise ValueError(f"Unsupported image format: {image_format}")
        self.dpi = dpi
        self.image_format = image_format
        self.quality = quality
        self.max_width = max_width
        self.max_height = max_height

    @classmethod
    def from_settings(cls, settings: Settings) -> "PageRasterizer":
        return cls(
            dpi=settings.render_dpi,
            image_format=settings.image_format,
            quality=settings.image_quality,
            max_width=settings.max_page_width,
            max_height=settings.max_page_height,
        )

    @property
    def content_type(self) -> str:
        return IMAGE_FORMATS[self.image_format][1]

    def open(self, data: bytes) -> "OpenedPdf":
        """Open a PDF for rendering. Use as a context manager."""
        return OpenedPdf(self, data)

    def validate(self, data: bytes) -> int:
        """Check the bytes are a readable PDF. Returns the page count."""
        with self.open(data) as pdf:
            return pdf.page_count

    def encode(self, image: Image.Image) -> tuple[bytes, int, int]:
        """Resize to fit the viewer box and encode. Returns (bytes, width, height)."""
        if image.mode not in ("RGB", "L"):
            image = image.convert("RGB")
        image.thumbnail((self.max_width, self.max_height), Image.LANCZOS)

        pil_format, _ = IMAGE_FORMATS[self.image_format]
        buf = io.BytesIO()
        if pil_format == "JPEG":
            image.save(buf, pil_format, quality=self.quality, optimize=True, progressive=True)
        elif pil_format == "WEBP":
            image.save(buf, pil_format, quality=self.quality, method=6)
        else:
            image.save(buf, pil_format, optimize=True)
        return buf.getvalue(), image.width, image.height


class OpenedPdf:
    """
    A PDF held open in a scoped temp directory.

    The temp directory and the parser are released on every exit path.
    """

    def __init__(self, rasterizer: PageRasterizer, data: bytes):
        self.rasterizer = rasterizer
        self.data = data
        self._tmpdir: Optional[tempfile.TemporaryDirectory] = None
        self._pdf = None
        self._lock = threading.Lock()

    def __enter__(self) -> "OpenedPdf":
        if not self.data.startswith(PDF_MAGIC):
            raise InvalidFormatError("File does not start with a %PDF- header")

        self._tmpdir = tempfile.TemporaryDirectory(prefix="pdf-convert-")
        try:
            path = Path(self._tmpdir.name) / "document.pdf"
            path.write_bytes(self.data)
            try:
                self._pdf = pdfplumber.open(path)
                count = len(self._pdf.pages)
            except Exception as e:
                detail = str(e) or type(e).__name__
                if "password" in detail.lower() or "encrypt" in detail.lower():
                    raise InvalidFormatError(f"PDF is password protected: {detail}") from e
                raise InvalidFormatError(f"PDF could not be parsed: {detail}") from e
            if count == 0:
                raise InvalidFormatError("PDF has no pages")
        except BaseException:
            self.close()
            raise
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    @property
    def page_count(self) -> int:
        return len(self._pdf.pages)

    def render_page(self, page_number: int, dpi: Optional[int] = None) -> RenderedPage:
        if not 1 <= page_number <= self.page_count:
            raise ValueError(f"Page {page_number} out of range (1-{self.page_count})")

        dpi = dpi or self.rasterizer.dpi
        with self._lock:
            if self._pdf is None:
                raise RuntimeError("PDF is closed")
            page = self._pdf.pages[page_number - 1]
            image = page.to_image(resolution=dpi).original
            data, width, height = self.rasterizer.encode(image)
            # pdfplumber caches parsed page objects; drop them as we go
            page.flush_cache()

        logger.debug("Rendered page %d at %d DPI: %d bytes (%dx%d)", page_number, dpi, len(data), width, height)
        return RenderedPage(
            page_number=page_number,
            data=data,
            format=self.rasterizer.image_format,
            content_type=self.rasterizer.content_type,
            width=width,
            height=height,
            dpi=dpi,
        )

    def close(self) -> None:
        with self._lock:
            if self._pdf is not None:
                self._pdf.close()
                self._pdf = None
        if self._tmpdir is not None:
            self._tmpdir.cleanup()
            self._tmpdir = None
