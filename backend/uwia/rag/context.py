"""
Context Builder — keyword-dense windows under a character budget

Matched chunks can be megabytes of text; a 128k-token model accepts a few
hundred thousand characters at most. The builder keeps what fits:

  texts within budget ──────────────► joined unchanged
     │ otherwise
     ▼
  slide windows of window_chars (overlap chars shared with the neighbour)
  score = 10 × keyword occurrences  (+5 for the first and last window)
  take windows best-first while the joined length stays within budget
  restore document order, join with CONTEXT_SEPARATOR
     │ nothing scored
     ▼
  leading budget_chars of the text

Used by query synthesis (over ranked chunks) and by the consolidated text
path (over the whole document).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

CONTEXT_SEPARATOR = "\n\n---\n\n"

KEYWORD_WEIGHT = 10
EDGE_BONUS     = 5


@dataclass(frozen=True)
class ContextWindow:
    position: int   # order across all source texts
    text:     str
    score:    int


class ContextBuilder:

    def __init__(self, budget_chars: int, window_chars: int = 5_000, overlap: int = 300) -> None:
        if window_chars <= overlap:
            raise ValueError("window_chars must exceed overlap")
        self.budget_chars = budget_chars
        self.window_chars = min(window_chars, budget_chars)
        self.overlap      = min(overlap, self.window_chars - 1)

    @classmethod
    def from_settings(cls, settings=None) -> "ContextBuilder":
        if settings is None:
            from uwia.core.config import settings
        return cls(
            settings.context_budget_chars,
            settings.context_window_chars,
            settings.context_window_overlap,
        )

    def build(self, texts: list[str], keywords: list[str]) -> str:
        parts  = [t for t in texts if t and t.strip()]
        joined = CONTEXT_SEPARATOR.join(parts)
        if len(joined) <= self.budget_chars:
            return joined

        windows  = self.windows(parts, keywords)
        selected = self._select(windows)
        if not selected:
            logger.warning(
                "No keyword window matched | chars=%d budget=%d; using leading text",
                len(joined), self.budget_chars,
            )
            return joined[:self.budget_chars]

        selected.sort(key=lambda w: w.position)
        context = CONTEXT_SEPARATOR.join(w.text for w in selected)
        logger.info(
            "Context trimmed | source_chars=%d windows=%d/%d context_chars=%d",
            len(joined), len(selected), len(windows), len(context),
        )
        return context

    def windows(self, texts: list[str], keywords: list[str]) -> list[ContextWindow]:
        terms = sorted({k.strip().lower() for k in keywords if k and k.strip()})
        step  = self.window_chars - self.overlap

        pieces: list[str] = []
        for text in texts:
            for start in range(0, len(text), step):
                pieces.append(text[start:start + self.window_chars])
                if start + self.window_chars >= len(text):
                    break

        last = len(pieces) - 1
        windows = []
        for position, piece in enumerate(pieces):
            lowered = piece.lower()
            score = KEYWORD_WEIGHT * sum(lowered.count(t) for t in terms)
            if position in (0, last):
                score += EDGE_BONUS
            windows.append(ContextWindow(position, piece, score))
        return windows

    def _select(self, windows: list[ContextWindow]) -> list[ContextWindow]:
        if not any(w.score > EDGE_BONUS for w in windows):
            return []

        ranked = sorted(windows, key=lambda w: (-w.score, w.position))
        selected: list[ContextWindow] = []
        used = 0
        for window in ranked:
            cost = len(window.text) + (len(CONTEXT_SEPARATOR) if selected else 0)
            if used + cost > self.budget_chars:
                continue
            selected.append(window)
            used += cost
        return selected
