"""Вспомогательные экспорты модулей конвейера."""

from .digest import compute_digest, verify_digest  # noqa: F401
from .chunking import ChunkEnvelope, build_chunk_envelopes  # noqa: F401
from .metrics import MetricAggregator  # noqa: F401
