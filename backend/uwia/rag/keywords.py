"""
Keyword Extraction — question → salient search terms

Primary: one LLM call returning comma-separated keywords.
Fallback: the stopword tokenizer below, used whenever the LLM call fails or
returns nothing usable.

The same tokenizer feeds BM25 ranking in retriever.py so query and corpus
are normalized identically.
"""

from __future__ import annotations

import logging
import string

from uwia.llm.gateway import LLMGateway
from uwia.llm.router import ModelRequirements, RoutingStrategy

logger = logging.getLogger(__name__)

MAX_KEYWORDS = 5


# ---------------------------------------------------------------------------
# Minimal English stopword list (plus question words)
# ---------------------------------------------------------------------------

_STOPWORDS = frozenset({
    "a", "an", "the", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "is", "it", "as", "be", "was", "are",
    "that", "this", "which", "have", "has", "had", "not", "no", "can",
    "will", "would", "could", "should", "may", "might", "do", "does",
    "did", "its", "their", "our", "your", "my", "his", "her",
    "what", "who", "when", "where", "why", "how", "there", "any", "document",
})

_PUNCT_TABLE = str.maketrans("", "", string.punctuation.replace("-", ""))


def tokenize(text: str) -> list[str]:
    """
    Lightweight tokeniser: lowercase → strip punctuation → drop stopwords.

    Preserves hyphens (important for identifiers like "POL-48291").
    Returns at least one token so BM25Okapi never receives an empty list.
    """
    text   = text.lower().translate(_PUNCT_TABLE)
    tokens = [t for t in text.split() if t and t not in _STOPWORDS]
    return tokens or ["<empty>"]


def fallback_keywords(question: str, limit: int = MAX_KEYWORDS) -> list[str]:
    """Distinct non-stopword tokens in question order."""
    seen: list[str] = []
    for token in tokenize(question):
        if token != "<empty>" and token not in seen:
            seen.append(token)
    return seen[:limit]


def parse_keyword_list(raw: str, limit: int = MAX_KEYWORDS) -> list[str]:
    keywords: list[str] = []
    for part in raw.replace("\n", ",").split(","):
        term = part.strip().strip("\"'`.-*").strip().lower()
        if term and term not in _STOPWORDS and term not in keywords:
            keywords.append(term)
    return keywords[:limit]


_KEYWORD_PROMPT = (
    "Extract the 1 to {limit} most specific search keywords from the user's question "
    "about an insurance claim document. Prefer nouns, names and identifiers that would "
    "literally appear in the document. Respond with a comma-separated list only."
)


class KeywordExtractor:

    def __init__(self, gateway: LLMGateway | None = None, limit: int = MAX_KEYWORDS) -> None:
        self._gateway = gateway or LLMGateway()
        self._limit   = limit

    async def extract(self, question: str) -> list[str]:
        try:
            response = await self._gateway.invoke(
                LLMGateway.build_messages(_KEYWORD_PROMPT.format(limit=self._limit), question),
                requirements=ModelRequirements(strategy=RoutingStrategy.LOWEST_LATENCY),
            )
            keywords = parse_keyword_list(response.content, self._limit)
        except Exception as exc:
            logger.warning("Keyword LLM failed; using tokenizer | error=%s", exc)
            keywords = []

        if not keywords:
            keywords = fallback_keywords(question, self._limit)

        logger.info("Keywords | question=%r keywords=%s", question[:80], keywords)
        return keywords
