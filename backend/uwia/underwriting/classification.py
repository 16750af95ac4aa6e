"""
Visual Classification — does a prompt need page images?

Signatures, stamps, checkboxes and handwriting are often invisible to text
extraction. Each consolidated prompt is classified once by keyword, with a
regex fallback; results are cached per (pmc_field, question prefix).

  classify(pmc_field, question)
     │
     ├─ cache hit → cached VisualRequirement
     │
     ├─ keyword scan over VISUAL_INDICATORS
     ├─ regex fallback        /sign/ /initial/ /stamp/ /seal/ /check.*box/ ...
     │
     └─ page hints            signatures → first + last page
                              stamps     → first page

The cache is bounded (LRU, 100 entries by default) and replaceable through
the ClassificationCache interface.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass

logger = logging.getLogger(__name__)

LAST_PAGE = -1

VISUAL_INDICATORS: dict[str, tuple[str, ...]] = {
    "signatures":      ("signature", "signed", "sign", "executed", "autograph", "initial", "initials"),
    "stamps":          ("stamp", "seal", "notary", "notarized", "certified", "official"),
    "checkboxes":      ("checkbox", "check box", "checked", "marked", "selected", "tick", "x mark"),
    "handwriting":     ("handwritten", "handwriting", "manuscript", "written by hand", "filled in"),
    "visual_elements": ("logo", "image", "photo", "diagram", "chart", "visual", "appearance"),
}

_FALLBACK_PATTERNS: tuple[tuple[str, re.Pattern], ...] = (
    ("signatures",  re.compile(r"sign", re.IGNORECASE)),
    ("signatures",  re.compile(r"signature", re.IGNORECASE)),
    ("signatures",  re.compile(r"initial", re.IGNORECASE)),
    ("stamps",      re.compile(r"stamp", re.IGNORECASE)),
    ("stamps",      re.compile(r"seal", re.IGNORECASE)),
    ("checkboxes",  re.compile(r"check.*box", re.IGNORECASE)),
    ("checkboxes",  re.compile(r"mark", re.IGNORECASE)),
    ("handwriting", re.compile(r"handwrit", re.IGNORECASE)),
)

_PAGE_HINTS: dict[str, tuple[int, ...]] = {
    "signatures": (1, LAST_PAGE),
    "stamps":     (1,),
}

# Questions that also ask for data values still need the text path.
_TEXT_CUES = ("date", "name", "number", "amount", "address", "text", "content", "value")


@dataclass(frozen=True)
class VisualRequirement:
    requires_visual: bool
    categories:      tuple[str, ...] = ()
    page_hints:      tuple[int, ...] = ()       # 1-based; LAST_PAGE = final page
    needs_text:      bool = True
    method:          str = "keyword"            # keyword | regex | none

    def resolve_pages(self, page_count: int) -> list[int]:
        pages: list[int] = []
        for hint in self.page_hints:
            page = page_count if hint == LAST_PAGE else hint
            if 1 <= page <= page_count and page not in pages:
                pages.append(page)
        return pages


# ---------------------------------------------------------------------------
# Cache interface
# ---------------------------------------------------------------------------

class ClassificationCache(ABC):

    @abstractmethod
    def get(self, key: str) -> VisualRequirement | None: ...

    @abstractmethod
    def set(self, key: str, value: VisualRequirement) -> None: ...

    @abstractmethod
    def evict(self) -> int:
        """Drop entries beyond capacity; returns how many were removed."""


class BoundedClassificationCache(ClassificationCache):
    """In-process LRU. Never grows past capacity."""

    def __init__(self, capacity: int | None = None) -> None:
        if capacity is None:
            from uwia.core.config import settings
            capacity = settings.classification_cache_size
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._entries: OrderedDict[str, VisualRequirement] = OrderedDict()

    def get(self, key: str) -> VisualRequirement | None:
        value = self._entries.get(key)
        if value is not None:
            self._entries.move_to_end(key)
        return value

    def set(self, key: str, value: VisualRequirement) -> None:
        self._entries[key] = value
        self._entries.move_to_end(key)
        self.evict()

    def evict(self) -> int:
        removed = 0
        while len(self._entries) > self.capacity:
            self._entries.popitem(last=False)
            removed += 1
        return removed

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------

def cache_key(pmc_field: str, question: str) -> str:
    return f"{pmc_field}__{question[:100]}"


class VisualClassifier:

    def __init__(self, cache: ClassificationCache | None = None) -> None:
        self._cache = cache if cache is not None else BoundedClassificationCache()

    def classify(self, pmc_field: str, question: str) -> VisualRequirement:
        key = cache_key(pmc_field, question)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        requirement = self._classify_uncached(pmc_field, question)
        self._cache.set(key, requirement)
        logger.debug(
            "Visual classification | field=%s visual=%s categories=%s method=%s",
            pmc_field, requirement.requires_visual, requirement.categories, requirement.method,
        )
        return requirement

    @staticmethod
    def _classify_uncached(pmc_field: str, question: str) -> VisualRequirement:
        haystack = f"{pmc_field.replace('_', ' ')} {question}".lower()

        categories = [
            category for category, words in VISUAL_INDICATORS.items()
            if any(word in haystack for word in words)
        ]
        method = "keyword"

        if not categories:
            for category, pattern in _FALLBACK_PATTERNS:
                if pattern.search(haystack) and category not in categories:
                    categories.append(category)
            method = "regex" if categories else "none"

        if not categories:
            return VisualRequirement(requires_visual=False, method=method)

        hints: list[int] = []
        for category in categories:
            for page in _PAGE_HINTS.get(category, ()):
                if page not in hints:
                    hints.append(page)

        return VisualRequirement(
            requires_visual=True,
            categories=tuple(categories),
            page_hints=tuple(hints),
            needs_text=any(cue in haystack for cue in _TEXT_CUES) or ";" in question,
            method=method,
        )
