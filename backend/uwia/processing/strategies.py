"""
Text Extraction Strategies  —  Strategy Pattern over Raw PDF Bytes
══════════════════════════════════════════════════════════════════

Each strategy turns raw PDF bytes into per-page text. The cascade in
extractor.py decides which result wins; strategies never raise.

  FormFieldExtractor   pypdf AcroForm reader — text/checkbox/radio/choice
                       values rendered as "name: value" lines
  BaselineExtractor    pypdf page.extract_text() — the reference result
  StructuredExtractor  PyMuPDF flow text + widget / annotation values, with a
                       canonical "=== FORM FIELD VALUES ===" trailer
  MetadataScraper      last resort: /Title, /Author … info entries and
                       literal strings inside BT … ET text objects

  PatternEnhancer      not a strategy — a supplementary binary scan for
                       key=value, checkbox, date and currency patterns
                       missing from the chosen text layer

Every strategy:
  - Accepts raw PDF bytes (never a file path — keeps workers stateless)
  - Runs its blocking parser in the default thread executor
  - Logs and returns an empty result on failure or timeout so the caller can
    fall through to the next method
"""

from __future__ import annotations

import asyncio
import io
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

FORM_DATA_HEADER   = "=== PDF FORM DATA ==="
FORM_FIELD_TRAILER = "=== FORM FIELD VALUES ==="
PATTERN_TRAILER    = "=== SUPPLEMENTARY PATTERNS ==="

# Upper bound on supplementary pattern lines appended to a document
MAX_PATTERN_MATCHES = 200


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class PageText:
    """
    Text extracted from a single page.

    page_number       : 1-based page index
    text              : raw extracted text (may be empty for image-only pages)
    confidence        : extraction confidence (0.0–1.0); -1.0 = not applicable
    extraction_method : name of the producing strategy
    """
    page_number:       int
    text:              str
    confidence:        float = -1.0
    extraction_method: str  = "unknown"


@dataclass
class ExtractionStrategyResult:
    """
    Full result from a single strategy run.

    pages         : list of PageText (one per page)
    total_chars   : sum of len(p.text) for all pages
    strategy_name : which strategy produced this result
    elapsed_ms    : wall-clock time for the strategy (ms)
    form_fields   : field name → value discovered by the strategy
    trailer       : text block appended after the page texts
    """
    pages:         list[PageText]
    total_chars:   int
    strategy_name: str
    elapsed_ms:    float = 0.0
    form_fields:   dict[str, str] = field(default_factory=dict)
    trailer:       str = ""

    @classmethod
    def empty(cls, strategy_name: str) -> "ExtractionStrategyResult":
        return cls(pages=[], total_chars=0, strategy_name=strategy_name)

    @property
    def page_text(self) -> str:
        return "\n\n".join(p.text for p in self.pages if p.text.strip())

    @property
    def full_text(self) -> str:
        """Page texts joined by blank lines, followed by the trailer block."""
        body = self.page_text
        if self.trailer:
            return f"{body}\n\n{self.trailer}" if body else self.trailer
        return body

    def is_usable(self, min_chars: int) -> bool:
        return len(self.full_text.strip()) >= min_chars


# ---------------------------------------------------------------------------
# Abstract strategy
# ---------------------------------------------------------------------------

class BaseTextExtractor(ABC):
    """
    Abstract base for text extraction strategies.

    Subclasses implement _extract_sync(); extract() wraps it with the thread
    executor, optional timeout, timing and failure logging.
    """

    @property
    @abstractmethod
    def strategy_name(self) -> str:
        """Unique name for logging."""

    @abstractmethod
    def _extract_sync(self, pdf_bytes: bytes) -> ExtractionStrategyResult:
        """Blocking extraction — runs in thread executor."""

    async def extract(
        self,
        pdf_bytes: bytes,
        timeout:   float | None = None,
    ) -> ExtractionStrategyResult:
        """Never raises; returns an empty result on failure."""
        loop = asyncio.get_event_loop()
        t0   = time.monotonic()

        try:
            result = await asyncio.wait_for(
                loop.run_in_executor(None, self._extract_sync, pdf_bytes),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.error("%s extraction timed out after %.0fs", self.strategy_name, timeout)
            result = ExtractionStrategyResult.empty(self.strategy_name)
        except Exception as exc:
            logger.warning("%s extraction failed: %s", self.strategy_name, exc, exc_info=True)
            result = ExtractionStrategyResult.empty(self.strategy_name)

        result.elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "%s | pages=%d total_chars=%d form_fields=%d elapsed_ms=%.0f",
            self.strategy_name, len(result.pages), result.total_chars,
            len(result.form_fields), result.elapsed_ms,
        )
        return result


# ---------------------------------------------------------------------------
# Strategy 1: AcroForm fields (pypdf)
# ---------------------------------------------------------------------------

class FormFieldExtractor(BaseTextExtractor):
    """
    Reads interactive form fields through pypdf's AcroForm support.

    Claim packets are often fillable PDFs whose answers live only in form
    fields, invisible to plain text extraction. Checkbox and radio values are
    PDF name objects ("/Yes", "/Off") and are reported without the slash.
    """

    @property
    def strategy_name(self) -> str:
        return "form_fields"

    def _extract_sync(self, pdf_bytes: bytes) -> ExtractionStrategyResult:
        from pypdf import PdfReader

        reader = PdfReader(io.BytesIO(pdf_bytes))
        fields = reader.get_fields() or {}

        values: dict[str, str] = {}
        for name, fld in fields.items():
            raw = fld.get("/V")
            if raw is None:
                continue
            text = format_field_value(raw)
            if text:
                values[name] = text

        if not values:
            return ExtractionStrategyResult.empty(self.strategy_name)

        body = "\n".join([FORM_DATA_HEADER] + [f"{k}: {v}" for k, v in values.items()])
        return ExtractionStrategyResult(
            pages=[PageText(1, body, extraction_method=self.strategy_name)],
            total_chars=len(body),
            strategy_name=self.strategy_name,
            form_fields=values,
        )


# ---------------------------------------------------------------------------
# Strategy 2: Baseline text layer (pypdf)
# ---------------------------------------------------------------------------

class BaselineExtractor(BaseTextExtractor):
    """General-purpose text layer extraction; its length is the baseline."""

    @property
    def strategy_name(self) -> str:
        return "pypdf"

    def _extract_sync(self, pdf_bytes: bytes) -> ExtractionStrategyResult:
        from pypdf import PdfReader

        reader = PdfReader(io.BytesIO(pdf_bytes))
        pages = [
            PageText(
                page_number=page_num,
                text=(page.extract_text() or "").strip(),
                extraction_method=self.strategy_name,
            )
            for page_num, page in enumerate(reader.pages, start=1)
        ]
        return ExtractionStrategyResult(
            pages=pages,
            total_chars=sum(len(p.text) for p in pages),
            strategy_name=self.strategy_name,
        )


# ---------------------------------------------------------------------------
# Strategy 3: Structured walk (PyMuPDF)
# ---------------------------------------------------------------------------

class StructuredExtractor(BaseTextExtractor):
    """
    Walks every page with PyMuPDF, collecting flow text plus the values of
    form widgets and the contents of text annotations.

    Widget values that never reach the text layer (typed into a fillable
    form after printing) are appended as a FORM FIELD VALUES trailer.

    Thread-safety: fitz.open() returns an independent document object per
    call — safe for concurrent use.
    """

    @property
    def strategy_name(self) -> str:
        return "pymupdf"

    def _extract_sync(self, pdf_bytes: bytes) -> ExtractionStrategyResult:
        import fitz  # PyMuPDF; imported here to avoid module-level import cost

        pages: list[PageText] = []
        form_fields: dict[str, str] = {}
        annotations: list[str] = []

        with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
            for page_num, page in enumerate(doc, start=1):
                raw = page.get_text("text") or ""
                pages.append(PageText(
                    page_number=page_num,
                    text=raw.strip(),
                    extraction_method=self.strategy_name,
                ))

                for widget in page.widgets() or []:
                    value = format_field_value(widget.field_value)
                    if widget.field_name and value:
                        form_fields[widget.field_name] = value

                for annot in page.annots() or []:
                    content = (annot.info or {}).get("content", "").strip()
                    if content:
                        annotations.append(f"annotation (page {page_num}): {content}")

        trailer = ""
        if form_fields or annotations:
            lines = [f"{k}: {v}" for k, v in form_fields.items()] + annotations
            trailer = "\n".join([FORM_FIELD_TRAILER] + lines)

        return ExtractionStrategyResult(
            pages=pages,
            total_chars=sum(len(p.text) for p in pages) + len(trailer),
            strategy_name=self.strategy_name,
            form_fields=form_fields,
            trailer=trailer,
        )


# ---------------------------------------------------------------------------
# Strategy 5: Metadata / raw content scraping
# ---------------------------------------------------------------------------

_INFO_RE       = re.compile(rb"/(Title|Subject|Author|Creator|Producer|Keywords)\s*\(((?:\\.|[^\\)])*)\)")
_TEXT_OBJ_RE   = re.compile(rb"BT(.*?)ET", re.DOTALL)
_LITERAL_RE    = re.compile(rb"\(((?:\\.|[^\\()])*)\)")
_ESCAPES       = {b"n": "\n", b"r": "\r", b"t": "\t", b"(": "(", b")": ")", b"\\": "\\"}
_ESCAPE_RE     = re.compile(rb"\\(.)", re.DOTALL)


def _decode_literal(raw: bytes) -> str:
    """Undo PDF literal-string escapes and decode as latin-1."""
    unescaped = _ESCAPE_RE.sub(lambda m: _ESCAPES.get(m.group(1), m.group(1).decode("latin-1")).encode("latin-1"), raw)
    return unescaped.decode("latin-1").strip()


class MetadataScraper(BaseTextExtractor):
    """
    Last-resort scrape of the raw byte stream.

    Only uncompressed content is reachable this way; it exists for damaged
    files that every parser rejects outright.
    """

    @property
    def strategy_name(self) -> str:
        return "metadata"

    def _extract_sync(self, pdf_bytes: bytes) -> ExtractionStrategyResult:
        lines: list[str] = []

        for key, value in _INFO_RE.findall(pdf_bytes):
            text = _decode_literal(value)
            if text:
                lines.append(f"{key.decode()}: {text}")

        for block in _TEXT_OBJ_RE.findall(pdf_bytes):
            fragments = [_decode_literal(lit) for lit in _LITERAL_RE.findall(block)]
            joined = " ".join(f for f in fragments if f)
            if joined:
                lines.append(joined)

        text = "\n".join(lines)
        if not text:
            return ExtractionStrategyResult.empty(self.strategy_name)

        return ExtractionStrategyResult(
            pages=[PageText(1, text, extraction_method=self.strategy_name)],
            total_chars=len(text),
            strategy_name=self.strategy_name,
        )


# ---------------------------------------------------------------------------
# Step 4: Pattern enhancement
# ---------------------------------------------------------------------------

_PATTERNS: dict[str, re.Pattern[str]] = {
    # AcroForm dictionaries left uncompressed: /T (name) ... /V (value)
    "field":    re.compile(r"/T\s*\(([^)]{1,80})\)[^>]{0,200}?/V\s*[(/]([^)/>\s][^)>]{0,119})"),
    "pair":     re.compile(r"\(([A-Za-z][A-Za-z #]{1,40}):\s*([^()]{1,80})\)"),
    "checkbox": re.compile(r"\[\s*([Xx✓])\s*\]\s*([A-Za-z][\w ]{2,40})"),
    "date":     re.compile(r"\b(\d{1,2}[/-]\d{1,2}[/-]\d{2,4})\b"),
    "currency": re.compile(r"(\$\s?\d{1,3}(?:,\d{3})*(?:\.\d{2})?)"),
}


class PatternEnhancer:
    """
    Binary scan of the raw buffer for value-like patterns the text layers
    missed. Returns a PATTERN_TRAILER block, or "" when nothing new is found.
    """

    def __init__(self, max_matches: int = MAX_PATTERN_MATCHES) -> None:
        self._max_matches = max_matches

    async def enhance(self, pdf_bytes: bytes, existing_text: str) -> str:
        loop = asyncio.get_event_loop()
        try:
            return await loop.run_in_executor(None, self.scan, pdf_bytes, existing_text)
        except Exception as exc:
            logger.warning("Pattern enhancement failed: %s", exc, exc_info=True)
            return ""

    def scan(self, pdf_bytes: bytes, existing_text: str) -> str:
        raw = pdf_bytes.decode("latin-1", errors="ignore")
        seen: set[str] = set()
        lines: list[str] = []

        for kind, pattern in _PATTERNS.items():
            for match in pattern.finditer(raw):
                groups = [g.strip() for g in match.groups()]
                value = groups[-1]
                if not value or value in existing_text:
                    continue
                line = f"{kind}: {' = '.join(groups)}" if len(groups) > 1 else f"{kind}: {value}"
                if line in seen:
                    continue
                seen.add(line)
                lines.append(line)
                if len(lines) >= self._max_matches:
                    break
            if len(lines) >= self._max_matches:
                break

        if not lines:
            return ""
        logger.info("PatternEnhancer | supplementary_lines=%d", len(lines))
        return "\n".join([PATTERN_TRAILER] + lines)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def format_field_value(value) -> str:
    """Render a form-field value (string, name object, bool or list) as text."""
    if value is None or value is False:
        return ""
    if value is True:
        return "Yes"
    if isinstance(value, (list, tuple)):
        return ", ".join(v for v in (format_field_value(item) for item in value) if v)
    text = str(value).strip()
    if text.startswith("/"):
        text = text[1:]
    return text
