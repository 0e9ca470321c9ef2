"""
Page preparation for the vision APIs: shrink each page under the providers'
request limits and encode it as base64 PNG. PDFs are rendered page by page.
"""

from __future__ import annotations

import base64
import io
import logging

from PIL import Image

from app.gradeai.ai.types import PageImage

logger = logging.getLogger(__name__)

MAX_IMAGE_SIZE_KB = 1500
MAX_IMAGE_WIDTH = 1600
MAX_IMAGE_HEIGHT = 2200
PDF_DPI = 200
MAX_PDF_PAGES = 20


class PageConversionError(RuntimeError):
    pass


def is_pdf(data: bytes) -> bool:
    return data[:4] == b"%PDF"


def _encode_png(img: Image.Image, compress_level: int) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="PNG", compress_level=compress_level)
    return buf.getvalue()


def _fit_inside(img: Image.Image, max_width: int, max_height: int | None = None) -> Image.Image:
    width, height = img.size
    scale = min(1.0, max_width / width, (max_height / height) if max_height else 1.0)
    if scale >= 1.0:
        return img
    return img.resize((max(1, round(width * scale)), max(1, round(height * scale))), Image.Resampling.LANCZOS)


def optimize_image(img: Image.Image) -> bytes:
    if img.mode not in ("RGB", "L"):
        img = img.convert("RGB")
    img = _fit_inside(img, MAX_IMAGE_WIDTH, MAX_IMAGE_HEIGHT)
    data = _encode_png(img, compress_level=6)
    if len(data) / 1024 > MAX_IMAGE_SIZE_KB:
        logger.info("Page still %.0f KB after resize, compressing further", len(data) / 1024)
        img = _fit_inside(img, int(MAX_IMAGE_WIDTH * 0.8))
        data = _encode_png(img, compress_level=9)
    return data


def prepare_image_for_vision(data: bytes, page_number: int = 1) -> PageImage:
    with Image.open(io.BytesIO(data)) as src:
        src.load()
        optimized = optimize_image(src)
    size_kb = len(optimized) / 1024
    logger.info("Prepared page %s for vision: %.0f KB -> %.0f KB", page_number, len(data) / 1024, size_kb)
    return PageImage(
        page_number=page_number,
        base64=base64.b64encode(optimized).decode("ascii"),
        mime_type="image/png",
        size_kb=size_kb,
    )


def convert_pdf_to_images(data: bytes) -> list[PageImage]:
    from pdf2image import convert_from_bytes
    from pdf2image.exceptions import PDFInfoNotInstalledError, PDFPageCountError, PDFSyntaxError

    try:
        rendered = convert_from_bytes(data, dpi=PDF_DPI, first_page=1, last_page=MAX_PDF_PAGES, fmt="png")
    except (PDFInfoNotInstalledError, PDFPageCountError, PDFSyntaxError) as e:
        raise PageConversionError(f"PDF conversion failed: {e}") from e

    pages: list[PageImage] = []
    for idx, page in enumerate(rendered, start=1):
        optimized = optimize_image(page)
        pages.append(
            PageImage(
                page_number=idx,
                base64=base64.b64encode(optimized).decode("ascii"),
                mime_type="image/png",
                size_kb=len(optimized) / 1024,
            )
        )
    if not pages:
        raise PageConversionError("Failed to extract any pages from PDF")
    logger.info("Converted PDF to %d pages (%.0f KB total)", len(pages), sum(p.size_kb for p in pages))
    return pages


def prepare_multiple_images(buffers: list[bytes], mime_types: list[str] | None = None) -> list[PageImage]:
    """All files in upload order, pages renumbered 1..n across files."""
    pages: list[PageImage] = []
    for idx, data in enumerate(buffers):
        mime = (mime_types[idx] if mime_types and idx < len(mime_types) else "") or ""
        if mime == "application/pdf" or is_pdf(data):
            file_pages = convert_pdf_to_images(data)
        else:
            file_pages = [prepare_image_for_vision(data)]
        for page in file_pages:
            page.page_number = len(pages) + 1
            pages.append(page)
    return pages
