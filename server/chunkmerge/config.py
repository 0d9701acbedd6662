"""Конфигурация сервиса через pydantic settings."""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Рабочие параметры сервера сборки."""

    upload_dir: Path = Path(__file__).resolve().parent.parent / "data" / "uploads"
    digest_algorithm: str = "md5"
    merge_workers: int = 4
    max_chunk_size: int = 64 * 1024 * 1024
    metrics_window_seconds: int = 60
    sse_queue_size: int = 100
    log_level: str = "INFO"

    class Config:
        env_prefix = "CHUNK_MERGE_"


settings = Settings()
