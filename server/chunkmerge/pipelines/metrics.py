"""Сбор и агрегация метрик в скользящем окне."""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict


@dataclass(slots=True)
class ChunkSample:
    timestamp: float
    num_bytes: int
    duration: float
    status: str


@dataclass(slots=True)
class MergeSample:
    timestamp: float
    num_bytes: int
    duration: float
    outcome: str


class MetricAggregator:
    """Собирает статистику приёма и сборки в пределах окна."""

    def __init__(self, window_seconds: int = 60) -> None:
        self.window_seconds = window_seconds
        self._chunks: Deque[ChunkSample] = deque()
        self._merges: Deque[MergeSample] = deque()
        # сборки пишут из рабочих потоков
        self._lock = threading.Lock()

    # ---------- Recording helpers ----------
    def record_chunk(self, num_bytes: int, duration: float, status: str) -> None:
        with self._lock:
            self._chunks.append(ChunkSample(time.time(), num_bytes, duration, status))
            self._trim()

    def record_merge(self, num_bytes: int, duration: float, outcome: str) -> None:
        with self._lock:
            self._merges.append(MergeSample(time.time(), num_bytes, duration, outcome))
            self._trim()

    # ---------- Aggregates ----------
    def _trim(self) -> None:
        cutoff = time.time() - self.window_seconds
        for deque_ in (self._chunks, self._merges):
            while deque_ and deque_[0].timestamp < cutoff:
                deque_.popleft()

    def throughput_kbps(self) -> float:
        accepted = [sample for sample in self._chunks if sample.status != "digest_mismatch"]
        if not accepted:
            return 0.0
        total_bytes = sum(sample.num_bytes for sample in accepted)
        total_time = sum(sample.duration for sample in accepted) or 1e-6
        return (total_bytes * 8 / 1000) / total_time

    def chunk_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for sample in self._chunks:
            counts[sample.status] = counts.get(sample.status, 0) + 1
        return counts

    def merge_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for sample in self._merges:
            counts[sample.outcome] = counts.get(sample.outcome, 0) + 1
        return counts

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            self._trim()
            merged_bytes = sum(sample.num_bytes for sample in self._merges if sample.outcome == "merged")
            return {
                "window_seconds": self.window_seconds,
                "throughput_kbps": round(self.throughput_kbps(), 3),
                "chunks": self.chunk_counts(),
                "merges": self.merge_counts(),
                "merged_bytes": merged_bytes,
                "samples": {
                    "chunks": len(self._chunks),
                    "merges": len(self._merges),
                },
            }
