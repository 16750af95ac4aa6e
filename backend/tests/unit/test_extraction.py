"""
Unit Tests — Extraction Strategies & Cascade
════════════════════════════════════════════
Strategies run against real PyMuPDF-built PDFs; cascade preference logic is
tested with injected strategy doubles.

  ✅ Baseline / structured strategies read the text layer
  ✅ Structured strategy surfaces widget values in its trailer
  ✅ Strategy failure → empty result, never an exception
  ✅ Cascade: structured wins when longer or when it carries missing form values
  ✅ Cascade: form fields, then metadata, then best sub-threshold text
  ✅ Cascade: ExtractionFailed only when every method is empty
  ✅ extract_pages(): non-empty pages plus trailer entry
  ✅ extract_pages(): a lone massive page is split before the trailer is added
  ✅ PatternEnhancer: only values missing from the text, bounded
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from uwia.core.exceptions import ExtractionFailed
from uwia.processing.chunking import PageChunker
from uwia.processing.extractor import ExtractionCascade
from uwia.processing.strategies import (
    FORM_FIELD_TRAILER,
    PATTERN_TRAILER,
    BaselineExtractor,
    ExtractionStrategyResult,
    MetadataScraper,
    PageText,
    PatternEnhancer,
    StructuredExtractor,
    format_field_value,
)


def _result(name: str, *texts: str, form_fields=None, trailer: str = "") -> ExtractionStrategyResult:
    pages = [PageText(i + 1, t, extraction_method=name) for i, t in enumerate(texts)]
    return ExtractionStrategyResult(
        pages=pages,
        total_chars=sum(len(t) for t in texts) + len(trailer),
        strategy_name=name,
        form_fields=form_fields or {},
        trailer=trailer,
    )


def _strategy(result: ExtractionStrategyResult):
    double = MagicMock()
    double.extract = AsyncMock(return_value=result)
    return double


def _cascade(form=None, baseline=None, structured=None, metadata=None, supplement: str = "", chunker=None):
    enhancer = MagicMock(spec=PatternEnhancer)
    enhancer.enhance = AsyncMock(return_value=supplement)
    return ExtractionCascade(
        min_text_chars=50,
        timeout_seconds=5.0,
        form_extractor=_strategy(form or ExtractionStrategyResult.empty("form_fields")),
        baseline_extractor=_strategy(baseline or ExtractionStrategyResult.empty("pypdf")),
        structured_extractor=_strategy(structured or ExtractionStrategyResult.empty("pymupdf")),
        metadata_scraper=_strategy(metadata or ExtractionStrategyResult.empty("metadata")),
        pattern_enhancer=enhancer,
        chunker=chunker,
    )


LONG = "Policy Number POL-48291 issued to JOHN DOE for the property at 12 Main Street."


# ─────────────────────────────────────────────────────────────────────────────
# Strategies against real PDFs
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.extraction
class TestStrategies:

    async def test_baseline_reads_text_layer(self, sample_pdf_bytes):
        result = await BaselineExtractor().extract(sample_pdf_bytes)
        assert result.strategy_name == "pypdf"
        assert len(result.pages) == 2
        assert "POL-48291" in result.full_text

    async def test_structured_reads_text_layer(self, sample_pdf_bytes):
        result = await StructuredExtractor().extract(sample_pdf_bytes)
        assert result.strategy_name == "pymupdf"
        assert "CLM-7734" in result.pages[1].text

    async def test_structured_collects_widget_values(self, form_pdf_bytes):
        result = await StructuredExtractor().extract(form_pdf_bytes)
        assert result.form_fields.get("insured_name") == "JANE ROE HOLDINGS LLC"
        assert result.trailer.startswith(FORM_FIELD_TRAILER)
        assert "insured_name: JANE ROE HOLDINGS LLC" in result.full_text

    async def test_invalid_bytes_return_empty_result(self):
        result = await StructuredExtractor().extract(b"not a pdf at all")
        assert result.pages == []
        assert result.full_text == ""

    async def test_metadata_scraper_reads_uncompressed_literals(self):
        raw = (
            b"%PDF-1.4\n1 0 obj << /Title (Proof of Loss) /Author (Acme Adjusters) >> endobj\n"
            b"2 0 obj << /Length 44 >> stream\nBT /F1 12 Tf (Insured: JOHN DOE) Tj ET\nendstream"
        )
        result = await MetadataScraper().extract(raw)
        assert "Title: Proof of Loss" in result.full_text
        assert "Insured: JOHN DOE" in result.full_text


# ─────────────────────────────────────────────────────────────────────────────
# Cascade preference
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.extraction
class TestCascade:

    async def test_baseline_used_when_structured_not_better(self):
        cascade = _cascade(baseline=_result("pypdf", LONG), structured=_result("pymupdf", LONG[:60]))
        result = await cascade.extract(b"%PDF")
        assert result.strategy_used == "pypdf"
        assert result.text == LONG

    async def test_structured_wins_when_longer(self):
        cascade = _cascade(
            baseline=_result("pypdf", LONG),
            structured=_result("pymupdf", LONG + " Additional endorsement text."),
        )
        result = await cascade.extract(b"%PDF")
        assert result.strategy_used == "pymupdf"

    async def test_structured_wins_when_it_carries_missing_form_values(self):
        structured = _result("pymupdf", LONG[:70], form_fields={"signed": "Yes"}, trailer="")
        cascade = _cascade(baseline=_result("pypdf", LONG), structured=structured)
        result = await cascade.extract(b"%PDF")
        assert result.strategy_used == "pymupdf"
        assert result.form_fields == {"signed": "Yes"}

    async def test_supplement_appended(self):
        cascade = _cascade(baseline=_result("pypdf", LONG), supplement=f"{PATTERN_TRAILER}\ndate: 03-14-24")
        result = await cascade.extract(b"%PDF")
        assert result.text == f"{LONG}\n\n{PATTERN_TRAILER}\ndate: 03-14-24"
        assert result.supplemented is True

    async def test_form_fields_used_when_text_layers_empty(self):
        form = _result("form_fields", "=== PDF FORM DATA ===\ninsured_name: JANE ROE HOLDINGS LLC, a long value")
        cascade = _cascade(form=form)
        result = await cascade.extract(b"%PDF")
        assert result.strategy_used == "form_fields"

    async def test_metadata_last_resort(self):
        cascade = _cascade(metadata=_result("metadata", "Title: Proof of Loss\nInsured: JOHN DOE, 12 Main Street"))
        result = await cascade.extract(b"%PDF")
        assert result.strategy_used == "metadata"

    async def test_below_threshold_text_returned_with_warning(self, caplog):
        cascade = _cascade(baseline=_result("pypdf", "short text"))
        result = await cascade.extract(b"%PDF")
        assert result.text == "short text"
        assert "below quality bar" in caplog.text

    async def test_all_empty_raises(self):
        with pytest.raises(ExtractionFailed):
            await _cascade().extract(b"%PDF")

    async def test_extract_text_returns_plain_string(self):
        text = await _cascade(baseline=_result("pypdf", LONG)).extract_text(b"%PDF")
        assert text == LONG

    async def test_real_pdf_end_to_end(self, sample_pdf_bytes):
        result = await ExtractionCascade(min_text_chars=50).extract(sample_pdf_bytes)
        assert "POL-48291" in result.text
        assert result.page_count == 2

    async def test_blank_pdf_raises(self, blank_pdf_bytes):
        cascade = ExtractionCascade(
            min_text_chars=50,
            metadata_scraper=_strategy(ExtractionStrategyResult.empty("metadata")),
        )
        with pytest.raises(ExtractionFailed):
            await cascade.extract(blank_pdf_bytes)


@pytest.mark.unit
@pytest.mark.extraction
class TestExtractPages:

    async def test_drops_blank_pages_and_appends_trailer(self):
        structured = _result("pymupdf", "page one", "  ", "page three", trailer=f"{FORM_FIELD_TRAILER}\nsigned: Yes")
        pages = await _cascade(structured=structured).extract_pages(b"%PDF")

        assert [p.page_number for p in pages] == [1, 3, 3]
        assert pages[-1].text.endswith("signed: Yes")

    async def test_massive_page_split_before_trailer(self):
        blob = "".join(chr(65 + i % 26) for i in range(250))
        structured = _result("pymupdf", blob, trailer=f"{FORM_FIELD_TRAILER}\nsigned: Yes")
        chunker = PageChunker(massive_page_chars=100, massive_split_chars=40)

        pages = await _cascade(structured=structured, chunker=chunker).extract_pages(b"%PDF")

        assert len(pages) == 8
        assert {p.page_number for p in pages} == {1}
        assert "".join(p.text for p in pages[:-1]) == blob
        assert all(len(p.text) <= 40 for p in pages[:-1])
        assert pages[-1].text == f"\n\n{FORM_FIELD_TRAILER}\nsigned: Yes"

    async def test_falls_back_to_baseline(self):
        pages = await _cascade(baseline=_result("pypdf", "only baseline")).extract_pages(b"%PDF")
        assert [p.text for p in pages] == ["only baseline"]

    async def test_no_text_returns_empty_list(self):
        assert await _cascade().extract_pages(b"%PDF") == []


@pytest.mark.unit
@pytest.mark.extraction
class TestPatternEnhancer:

    def test_reports_only_missing_values(self):
        raw = b"(Claimant: JOHN DOE) (Loss Date: 03/14/2024) $12,450.00"
        trailer = PatternEnhancer().scan(raw, existing_text="JOHN DOE")

        assert trailer.startswith(PATTERN_TRAILER)
        assert "03/14/2024" in trailer
        assert "$12,450.00" in trailer
        assert "pair: Claimant = JOHN DOE" not in trailer

    def test_nothing_new_returns_empty(self):
        assert PatternEnhancer().scan(b"03/14/2024", existing_text="03/14/2024") == ""

    def test_max_matches_bound(self):
        raw = " ".join(f"0{i % 9 + 1}/1{i % 9}/2024" for i in range(50)).encode()
        trailer = PatternEnhancer(max_matches=3).scan(raw, existing_text="")
        assert len(trailer.splitlines()) == 4

    @pytest.mark.parametrize("value, expected", [
        (True, "Yes"), (False, ""), (None, ""), ("/Off", "Off"), (["/A", "B"], "A, B"), ("  x ", "x"),
    ])
    def test_format_field_value(self, value, expected):
        assert format_field_value(value) == expected
