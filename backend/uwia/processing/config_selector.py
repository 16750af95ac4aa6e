"""
Size-Adaptive Configuration Selector
════════════════════════════════════

Maps a document's byte size to a processing configuration:

    size (MB)     chunk_size   parallelism   streaming   swap hint
    ─────────     ──────────   ───────────   ─────────   ─────────
    ≤ 10          0 (none)     1             no          no
    10 – 25       2 MiB        4             yes         no
    25 – 50       5 MiB        2             yes         no
    > 50          8 MiB        1             yes         yes

chunk_size grows and parallelism shrinks with size: bigger documents mean
bigger per-chunk memory, so fewer chunks are stored concurrently.

select_config() and timeout_for_size() are pure functions — no I/O, no
globals read at call time unless thresholds are omitted.
"""

from __future__ import annotations

from dataclasses import dataclass

_MB = 1024 * 1024


@dataclass(frozen=True)
class SizeThresholds:
    """Breakpoints and per-class settings; built from Settings by default."""
    no_chunking_max_mb: float = 10.0
    medium_max_mb:      float = 25.0
    large_max_mb:       float = 50.0

    medium_chunk_size: int = 2 * _MB
    large_chunk_size:  int = 5 * _MB
    huge_chunk_size:   int = 8 * _MB

    medium_parallelism: int = 4
    large_parallelism:  int = 2
    huge_parallelism:   int = 1

    @classmethod
    def from_settings(cls, settings=None) -> "SizeThresholds":
        if settings is None:
            from uwia.core.config import settings
        return cls(
            no_chunking_max_mb=settings.no_chunking_max_mb,
            medium_max_mb=settings.medium_max_mb,
            large_max_mb=settings.large_max_mb,
            medium_chunk_size=settings.medium_chunk_size,
            large_chunk_size=settings.large_chunk_size,
            huge_chunk_size=settings.huge_chunk_size,
            medium_parallelism=settings.medium_parallelism,
            large_parallelism=settings.large_parallelism,
            huge_parallelism=settings.huge_parallelism,
        )


@dataclass(frozen=True)
class ProcessingConfig:
    """
    chunk_size       : target chunk size in characters; 0 = no chunking
    max_parallelism  : chunks stored concurrently per batch
    use_streaming    : process asynchronously in a worker
    enable_swap_hint : document large enough to warrant aggressive GC
    size_class       : small | medium | large | huge
    """
    chunk_size:       int
    max_parallelism:  int
    use_streaming:    bool
    enable_swap_hint: bool
    size_class:       str

    @property
    def requires_chunking(self) -> bool:
        return self.chunk_size > 0


def select_config(
    file_size_bytes: int,
    thresholds:      SizeThresholds | None = None,
) -> ProcessingConfig:
    """Pick the processing configuration for a document of the given size."""
    if file_size_bytes < 0:
        raise ValueError(f"file size must be non-negative, got {file_size_bytes}")

    t = thresholds or SizeThresholds.from_settings()
    size_mb = file_size_bytes / _MB

    if size_mb <= t.no_chunking_max_mb:
        return ProcessingConfig(0, 1, False, False, "small")
    if size_mb <= t.medium_max_mb:
        return ProcessingConfig(t.medium_chunk_size, t.medium_parallelism, True, False, "medium")
    if size_mb <= t.large_max_mb:
        return ProcessingConfig(t.large_chunk_size, t.large_parallelism, True, False, "large")
    return ProcessingConfig(t.huge_chunk_size, t.huge_parallelism, True, True, "huge")


def estimate_processing_time(config: ProcessingConfig) -> str:
    """Human-facing estimate returned with the upload response."""
    return {
        "small":  "under 1 minute",
        "medium": "1-3 minutes",
        "large":  "3-6 minutes",
        "huge":   "5-10 minutes",
    }[config.size_class]


# ---------------------------------------------------------------------------
# Timeouts scaled by size
# ---------------------------------------------------------------------------

def timeout_for_size(file_size_bytes: int, settings=None) -> float:
    """
    Extraction timeout in seconds.

      < 30 MB  → base (90 s)
      ≥ 30 MB  → base × multiplier, capped (180 s)
      ≥ 80 MB  → ultra-large budget (300 s)
    """
    if settings is None:
        from uwia.core.config import settings
    size_mb = file_size_bytes / _MB

    if size_mb >= settings.ultra_large_threshold_mb:
        return settings.ultra_large_timeout_seconds
    if size_mb >= settings.large_timeout_threshold_mb:
        return min(
            settings.base_timeout_seconds * settings.timeout_multiplier,
            settings.large_timeout_cap_seconds,
        )
    return settings.base_timeout_seconds


def timeout_per_page(total_pages: int) -> float:
    """Per-page rasterization budget; cheaper per page on long documents."""
    if total_pages > 50:
        return 10.0
    if total_pages > 20:
        return 12.0
    return 15.0
