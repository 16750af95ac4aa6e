"""
Retrieval package — keyword match, BM25 ranking, answer synthesis.
"""

from uwia.rag.context import ContextBuilder
from uwia.rag.pipeline import QueryResult, RagQueryService

__all__ = [
    "ContextBuilder",
    "QueryResult",
    "RagQueryService",
]
