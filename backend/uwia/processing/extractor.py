"""
Text Extraction Orchestrator
════════════════════════════

Runs the extraction cascade over a raw PDF buffer and returns the best
available plain-text representation.

Strategy cascade (preference order, not strictly first-success):

  1. FormFieldExtractor   ─┐
  2. BaselineExtractor     ├─ all three always run
  3. StructuredExtractor  ─┘
        │
        ▼
  chosen = baseline (if usable)
  structured replaces it when longer, or when it found form values the
  baseline text does not contain
        │
        ▼
  4. PatternEnhancer supplements the chosen text
        │
  nothing usable? → form fields → 5. MetadataScraper → ExtractionFailed

A step "succeeds" only when its text reaches min_text_chars. Each step runs
under a size-scaled timeout; a timeout or exception is a failed step, never
a failed cascade.

This module is the only place that knows about the strategy order.
Workers and services only see ExtractionResult / PageText.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from uwia.core.exceptions import ExtractionFailed
from uwia.processing.chunking import PageChunker
from uwia.processing.config_selector import timeout_for_size
from uwia.processing.strategies import (
    BaselineExtractor,
    ExtractionStrategyResult,
    FormFieldExtractor,
    MetadataScraper,
    PageText,
    PatternEnhancer,
    StructuredExtractor,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class ExtractionResult:
    """
    Full extraction output returned to the session pipeline.

    text           : chosen text, including trailer / supplement blocks
    pages          : per-page texts of the winning strategy
    strategy_used  : "pymupdf" | "pypdf" | "form_fields" | "metadata"
    total_chars    : len(text)
    elapsed_ms     : total cascade wall time (ms)
    page_count     : number of pages reported by the winning strategy
    form_fields    : field name → value, merged from every strategy
    supplemented   : True if the pattern pass appended a block
    """
    text:          str
    pages:         list[PageText]
    strategy_used: str
    total_chars:   int
    elapsed_ms:    float
    page_count:    int
    form_fields:   dict[str, str] = field(default_factory=dict)
    supplemented:  bool = False


# ---------------------------------------------------------------------------
# Cascade
# ---------------------------------------------------------------------------

class ExtractionCascade:
    """
    Stateless orchestrator; strategies are injectable for testing.

    Usage:
        cascade = ExtractionCascade()
        text = await cascade.extract_text(pdf_bytes)
    """

    def __init__(
        self,
        min_text_chars:  int | None = None,
        timeout_seconds: float | None = None,
        form_extractor:       FormFieldExtractor | None = None,
        baseline_extractor:   BaselineExtractor | None = None,
        structured_extractor: StructuredExtractor | None = None,
        metadata_scraper:     MetadataScraper | None = None,
        pattern_enhancer:     PatternEnhancer | None = None,
        chunker:              PageChunker | None = None,
    ) -> None:
        if min_text_chars is None:
            from uwia.core.config import settings
            min_text_chars = settings.min_text_chars
        self._min_chars  = min_text_chars
        self._timeout    = timeout_seconds
        self._form       = form_extractor or FormFieldExtractor()
        self._baseline   = baseline_extractor or BaselineExtractor()
        self._structured = structured_extractor or StructuredExtractor()
        self._metadata   = metadata_scraper or MetadataScraper()
        self._enhancer   = pattern_enhancer or PatternEnhancer()
        self._chunker    = chunker or PageChunker.from_settings()

    async def extract_text(self, pdf_bytes: bytes) -> str:
        """Best plain text for the buffer. Raises ExtractionFailed."""
        result = await self.extract(pdf_bytes)
        return result.text

    async def extract(self, pdf_bytes: bytes) -> ExtractionResult:
        t0 = time.monotonic()
        timeout = self._step_timeout(pdf_bytes)

        form       = await self._form.extract(pdf_bytes, timeout=timeout)
        baseline   = await self._baseline.extract(pdf_bytes, timeout=timeout)
        structured = await self._structured.extract(pdf_bytes, timeout=timeout)

        merged_fields = {**form.form_fields, **structured.form_fields}

        chosen = self._choose(baseline, structured)
        if chosen is not None:
            text = chosen.full_text
            supplement = await self._enhancer.enhance(pdf_bytes, text)
            if supplement:
                text = f"{text}\n\n{supplement}"
            return self._finish(chosen, text, merged_fields, bool(supplement), t0)

        if form.is_usable(self._min_chars):
            return self._finish(form, form.full_text, merged_fields, False, t0)

        metadata = await self._metadata.extract(pdf_bytes, timeout=timeout)
        if metadata.is_usable(self._min_chars):
            return self._finish(metadata, metadata.full_text, merged_fields, False, t0)

        # Nothing cleared the quality bar; keep the longest non-empty text
        candidates = [r for r in (structured, baseline, form, metadata) if r.full_text.strip()]
        if candidates:
            best = max(candidates, key=lambda r: len(r.full_text))
            logger.warning(
                "Extraction below quality bar | strategy=%s chars=%d min_chars=%d",
                best.strategy_name, len(best.full_text), self._min_chars,
            )
            return self._finish(best, best.full_text, merged_fields, False, t0)

        logger.error("Extraction failed | bytes=%d all strategies empty", len(pdf_bytes))
        raise ExtractionFailed()

    async def extract_pages(self, pdf_bytes: bytes) -> list[PageText]:
        """
        Per-page text for the chunking engine: PyMuPDF first, pypdf fallback.

        Whitespace-only pages are dropped. A lone massive page is pre-split
        first; the form-field trailer is then carried as an extra entry tagged
        with the last page number so chunked sessions keep widget values.
        Returns [] when neither parser yields text.
        """
        timeout = self._step_timeout(pdf_bytes)

        structured = await self._structured.extract(pdf_bytes, timeout=timeout)
        pages = [p for p in structured.pages if p.text.strip()]
        if pages:
            units = self._chunker.split_massive_pages([(p.page_number, p.text) for p in pages])
            if len(units) != len(pages):
                pages = [PageText(n, t, extraction_method=structured.strategy_name) for n, t in units]
            if structured.trailer:
                last = structured.pages[-1].page_number
                pages.append(PageText(last, "\n\n" + structured.trailer, extraction_method=structured.strategy_name))
            return pages

        baseline = await self._baseline.extract(pdf_bytes, timeout=timeout)
        return [p for p in baseline.pages if p.text.strip()]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _step_timeout(self, pdf_bytes: bytes) -> float:
        return self._timeout if self._timeout is not None else timeout_for_size(len(pdf_bytes))

    def _choose(
        self,
        baseline:   ExtractionStrategyResult,
        structured: ExtractionStrategyResult,
    ) -> ExtractionStrategyResult | None:
        chosen = baseline if baseline.is_usable(self._min_chars) else None

        if not structured.is_usable(self._min_chars):
            return chosen
        if chosen is None:
            return structured

        if len(structured.full_text) > len(chosen.full_text):
            return structured

        baseline_text = chosen.full_text
        if any(v not in baseline_text for v in structured.form_fields.values()):
            return structured
        return chosen

    @staticmethod
    def _finish(
        result:       ExtractionStrategyResult,
        text:         str,
        form_fields:  dict[str, str],
        supplemented: bool,
        t0:           float,
    ) -> ExtractionResult:
        elapsed = (time.monotonic() - t0) * 1000
        logger.info(
            "Extraction complete | strategy=%s pages=%d chars=%d supplemented=%s elapsed_ms=%.0f",
            result.strategy_name, len(result.pages), len(text), supplemented, elapsed,
        )
        return ExtractionResult(
            text=text,
            pages=result.pages,
            strategy_used=result.strategy_name,
            total_chars=len(text),
            elapsed_ms=elapsed,
            page_count=len(result.pages),
            form_fields=form_fields,
            supplemented=supplemented,
        )
