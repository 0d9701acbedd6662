"""Нарезка файла на чанки для загрузки."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List

from .digest import DEFAULT_ALGORITHM, compute_digest


@dataclass(slots=True)
class ChunkEnvelope:
    """Описание отдельного чанка большого файла."""

    assembly_id: str
    index: int
    total: int
    payload: bytes
    digest: str


def build_chunk_envelopes(
    assembly_id: str,
    data: bytes,
    chunk_size: int,
    algorithm: str = DEFAULT_ALGORITHM,
) -> List[ChunkEnvelope]:
    """Нарезать байты на конверты с номерами 1..total и контрольными суммами."""

    if chunk_size <= 0:
        raise ValueError("Размер чанка должен быть положительным.")
    if not data:
        raise ValueError("Нечего нарезать: данные пусты.")

    total = (len(data) + chunk_size - 1) // chunk_size
    envelopes: List[ChunkEnvelope] = []
    for index in range(1, total + 1):
        start = (index - 1) * chunk_size
        payload = data[start : start + chunk_size]
        envelopes.append(
            ChunkEnvelope(
                assembly_id=assembly_id,
                index=index,
                total=total,
                payload=payload,
                digest=compute_digest(payload, algorithm),
            )
        )
    return envelopes

