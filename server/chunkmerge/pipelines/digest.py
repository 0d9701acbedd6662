"""Подсчёт и проверка контрольных сумм чанков."""

from __future__ import annotations

import hashlib

DEFAULT_ALGORITHM = "md5"


def new_hasher(algorithm: str = DEFAULT_ALGORITHM):
    try:
        return hashlib.new(algorithm)
    except ValueError as exc:
        raise ValueError(f"Неизвестный алгоритм хэширования: {algorithm}") from exc


def compute_digest(data: bytes, algorithm: str = DEFAULT_ALGORITHM) -> str:
    """Хэш содержимого в шестнадцатеричном виде."""

    hasher = new_hasher(algorithm)
    hasher.update(data)
    return hasher.hexdigest()


def normalize_digest(value: str) -> str:
    return value.strip().lower()


def verify_digest(data: bytes, expected: str, algorithm: str = DEFAULT_ALGORITHM) -> bool:
    return compute_digest(data, algorithm) == normalize_digest(expected)
