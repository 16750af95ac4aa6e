"""
Memory Governor  —  cooperative throttle between chunk batches
══════════════════════════════════════════════════════════════

Before each storage batch the session pipeline calls throttle():

    usage = RSS / memory_limit

    usage ≥ critical (0.90)  →  gc.collect() + sleep(pause_seconds)
    usage ≥ high     (0.80)  →  gc.collect()
    otherwise                →  no-op

This slows batch-to-batch progression only; it cannot stop a single
memory-heavy extraction from exhausting the process.
"""

from __future__ import annotations

import asyncio
import gc
import logging
from dataclasses import dataclass
from enum import Enum

import psutil

logger = logging.getLogger(__name__)

_MB = 1024 * 1024


class PressureLevel(str, Enum):
    NORMAL   = "normal"
    HIGH     = "high"
    CRITICAL = "critical"


@dataclass
class MemorySnapshot:
    rss_bytes: int
    limit_bytes: int

    @property
    def usage(self) -> float:
        return self.rss_bytes / self.limit_bytes if self.limit_bytes else 0.0

    @property
    def rss_mb(self) -> float:
        return self.rss_bytes / _MB


class MemoryGovernor:
    def __init__(
        self,
        limit_mb:           int = 1536,
        high_watermark:     float = 0.80,
        critical_watermark: float = 0.90,
        pause_seconds:      float = 5.0,
        enabled:            bool = True,
        process:            psutil.Process | None = None,
    ) -> None:
        if not 0 < high_watermark <= critical_watermark:
            raise ValueError("watermarks must satisfy 0 < high <= critical")
        self._limit_bytes = limit_mb * _MB
        self._high        = high_watermark
        self._critical    = critical_watermark
        self._pause       = pause_seconds
        self._enabled     = enabled
        self._process     = process

    @classmethod
    def from_settings(cls, settings=None) -> "MemoryGovernor":
        if settings is None:
            from uwia.core.config import settings
        return cls(
            limit_mb=settings.memory_limit_mb,
            high_watermark=settings.memory_high_watermark,
            critical_watermark=settings.memory_critical_watermark,
            pause_seconds=settings.memory_pause_seconds,
            enabled=settings.enable_memory_monitoring,
        )

    def snapshot(self) -> MemorySnapshot:
        if self._process is None:
            self._process = psutil.Process()
        return MemorySnapshot(self._process.memory_info().rss, self._limit_bytes)

    def classify(self, snapshot: MemorySnapshot) -> PressureLevel:
        if snapshot.usage >= self._critical:
            return PressureLevel.CRITICAL
        if snapshot.usage >= self._high:
            return PressureLevel.HIGH
        return PressureLevel.NORMAL

    async def throttle(self, session_id: str | None = None) -> PressureLevel:
        """Run the pre-batch check; returns the level observed."""
        if not self._enabled:
            return PressureLevel.NORMAL

        snap  = self.snapshot()
        level = self.classify(snap)

        if level is PressureLevel.CRITICAL:
            logger.warning(
                "Memory critical | session=%s rss_mb=%.0f usage=%.2f pause_s=%.1f",
                session_id, snap.rss_mb, snap.usage, self._pause,
            )
            gc.collect()
            await asyncio.sleep(self._pause)
        elif level is PressureLevel.HIGH:
            logger.info(
                "Memory high | session=%s rss_mb=%.0f usage=%.2f",
                session_id, snap.rss_mb, snap.usage,
            )
            gc.collect()
        return level
