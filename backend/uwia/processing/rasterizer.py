"""
Page Rasterizer
═══════════════

Renders selected PDF pages to PNG bytes for the vision evaluation path.

  rasterize(pdf_bytes, page_numbers, scale) -> {page_number: png_bytes}

Rendering is blocking PyMuPDF work and runs in the thread executor. The
whole call is bounded by timeout_per_page(total_pages) × len(pages); on
expiry ConversionTimeout is raised so the caller can retry with fewer pages
or fall back to text-only analysis.
"""

from __future__ import annotations

import asyncio
import logging
import time

from uwia.core.exceptions import ConversionTimeout
from uwia.processing.config_selector import timeout_per_page

logger = logging.getLogger(__name__)


class PageRasterizer:

    def __init__(self, default_scale: float = 2.0) -> None:
        self._default_scale = default_scale

    async def page_count(self, pdf_bytes: bytes) -> int:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, _count_pages, pdf_bytes)

    async def rasterize(
        self,
        pdf_bytes:    bytes,
        page_numbers: list[int],
        scale:        float | None = None,
    ) -> dict[int, bytes]:
        """1-based page numbers; out-of-range pages are skipped."""
        if not page_numbers:
            return {}

        scale = scale or self._default_scale
        total = await self.page_count(pdf_bytes)
        wanted = [p for p in page_numbers if 1 <= p <= total]
        timeout = timeout_per_page(total) * max(len(wanted), 1)

        loop = asyncio.get_event_loop()
        t0   = time.monotonic()
        try:
            images = await asyncio.wait_for(
                loop.run_in_executor(None, _render_pages, pdf_bytes, wanted, scale),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Rasterization timed out | pages=%s total_pages=%d timeout_s=%.0f",
                wanted, total, timeout,
            )
            raise ConversionTimeout(wanted, timeout)

        logger.info(
            "Rasterized | pages=%d scale=%.1f elapsed_ms=%.0f",
            len(images), scale, (time.monotonic() - t0) * 1000,
        )
        return images


def _count_pages(pdf_bytes: bytes) -> int:
    import fitz

    with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
        return doc.page_count


def _render_pages(pdf_bytes: bytes, page_numbers: list[int], scale: float) -> dict[int, bytes]:
    import fitz

    images: dict[int, bytes] = {}
    matrix = fitz.Matrix(scale, scale)
    with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
        for page_num in page_numbers:
            pix = doc[page_num - 1].get_pixmap(matrix=matrix)
            images[page_num] = pix.tobytes("png")
    return images
