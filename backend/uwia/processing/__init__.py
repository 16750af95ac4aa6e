"""
Document Processing Package
════════════════════════════

Everything between raw PDF bytes and persisted chunks:

  Size Selection → Text Extraction Cascade → Page Packing → (Rasterization)

Modules
───────
  strategies.py       Extraction strategies (pypdf forms/text, PyMuPDF, raw scrape)
  extractor.py        Cascade that picks the best strategy result
  config_selector.py  Size → chunk size / parallelism / timeouts
  chunking.py         Order-preserving page packer with massive-page split
  memory.py           psutil-backed throttle between storage batches
  rasterizer.py       PyMuPDF page → PNG for the vision path

Design principles
─────────────────
  • Every component is stateless and dependency-injected.
  • Blocking PDF parsing runs in the thread executor, never on the loop.
  • Every step emits structured log lines.
"""

from uwia.processing.chunking import ChunkResult, PageChunker
from uwia.processing.config_selector import ProcessingConfig, select_config
from uwia.processing.extractor import ExtractionCascade, ExtractionResult
from uwia.processing.memory import MemoryGovernor
from uwia.processing.rasterizer import PageRasterizer

__all__ = [
    "ChunkResult",
    "PageChunker",
    "ProcessingConfig",
    "select_config",
    "ExtractionCascade",
    "ExtractionResult",
    "MemoryGovernor",
    "PageRasterizer",
]
