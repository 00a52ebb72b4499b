from pathlib import Path

import pytest
from PIL import Image
import io

from studyroom.core.errors import InvalidFormatError
from studyroom.services.rasterizer import PageRasterizer

from conftest import make_pdf


@pytest.fixture
def real_rasterizer() -> PageRasterizer:
    return PageRasterizer(dpi=72, image_format="jpg", quality=85)


def test_validate_returns_page_count(real_rasterizer, pdf_bytes):
    assert real_rasterizer.validate(pdf_bytes) == 3


def test_validate_rejects_non_pdf(real_rasterizer):
    with pytest.raises(InvalidFormatError):
        real_rasterizer.validate(b"PK\x03\x04 definitely a zip file")


def test_validate_rejects_corrupt_pdf(real_rasterizer):
    with pytest.raises(InvalidFormatError):
        real_rasterizer.validate(b"%PDF-1.4\n this is not really a pdf body \n%%EOF")


def _render(rasterizer: PageRasterizer, data: bytes, page_number: int = 1):
    with rasterizer.open(data) as pdf:
        return pdf.render_page(page_number)


def test_render_page_produces_jpeg(real_rasterizer, pdf_bytes):
    page = _render(real_rasterizer, pdf_bytes, 2)

    assert page.page_number == 2
    assert page.format == "jpg"
    assert page.content_type == "image/jpeg"
    assert page.data[:2] == b"\xff\xd8"
    assert page.size == len(page.data)
    assert (page.width, page.height) == (600, 800)


def test_noise_page_is_above_blank_threshold_and_white_page_is_below(real_rasterizer):
    with real_rasterizer.open(make_pdf(2, blank_pages=(2,))) as pdf:
        sizes = {n: pdf.render_page(n).size for n in (1, 2)}

    assert sizes[1] > 10_000
    assert sizes[2] < 10_000


def test_pages_shrink_to_fit_without_enlarging():
    small_box = PageRasterizer(dpi=72, max_width=300, max_height=300)
    page = _render(small_box, make_pdf(1))
    assert max(page.width, page.height) == 300
    assert page.height > page.width

    big_box = PageRasterizer(dpi=72, max_width=5000, max_height=5000)
    page = _render(big_box, make_pdf(1))
    assert (page.width, page.height) == (600, 800)


@pytest.mark.parametrize("fmt, pil_format", [("png", "PNG"), ("webp", "WEBP")])
def test_other_image_formats(fmt, pil_format):
    rasterizer = PageRasterizer(dpi=72, image_format=fmt)
    page = _render(rasterizer, make_pdf(1))
    assert page.format == fmt
    assert Image.open(io.BytesIO(page.data)).format == pil_format


def test_unknown_format_is_rejected():
    with pytest.raises(ValueError):
        PageRasterizer(image_format="gif")


def test_page_out_of_range_fails_without_closing_the_pdf(real_rasterizer):
    with real_rasterizer.open(make_pdf(2)) as pdf:
        with pytest.raises(ValueError):
            pdf.render_page(5)
        assert pdf.render_page(2).page_number == 2


def test_temp_directory_removed_on_success_and_failure(real_rasterizer, pdf_bytes):
    with real_rasterizer.open(pdf_bytes) as pdf:
        tmpdir = Path(pdf._tmpdir.name)
        assert (tmpdir / "document.pdf").exists()
    assert not tmpdir.exists()

    with pytest.raises(RuntimeError):
        with real_rasterizer.open(pdf_bytes) as pdf:
            tmpdir = Path(pdf._tmpdir.name)
            raise RuntimeError("boom")
    assert not tmpdir.exists()
