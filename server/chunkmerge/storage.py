"""Хранилище чанков на локальном диске."""

from __future__ import annotations

import logging
import ntpath
import os
import posixpath
import re
import uuid
from pathlib import Path
from typing import Iterator, List, Optional

from .exceptions import DigestMismatchError, EmptyPayloadError, MissingChunkError, StorageWriteError
from .pipelines.digest import DEFAULT_ALGORITHM, compute_digest, normalize_digest, verify_digest

logger = logging.getLogger(__name__)


class ChunkStore:
    """
    Чанки лежат рядом с итоговым файлом: ``{id}.part{index}`` и ``{id}``.

    Каждый чанк пишется во временный файл и переименовывается атомарно,
    поэтому записи разных номеров не требуют общей блокировки, а
    недописанный чанк никогда не виден под своим именем.
    """

    def __init__(self, root: Path, algorithm: str = DEFAULT_ALGORITHM):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.algorithm = algorithm

    @staticmethod
    def sanitize_id(assembly_id: str) -> str:
        """Удалить управляющие символы и пути, оставив безопасное имя."""

        candidate = ntpath.basename(assembly_id)
        candidate = posixpath.basename(candidate)
        candidate = Path(candidate).name
        if candidate in ("", ".", ".."):
            candidate = "file"
        candidate = re.sub(r"[^A-Za-z0-9._-]", "_", candidate)
        return candidate or "file"

    # -------- Пути --------
    def chunk_path(self, assembly_id: str, index: int) -> Path:
        return self.root / f"{self.sanitize_id(assembly_id)}.part{index}"

    def merged_path(self, assembly_id: str) -> Path:
        return self.root / self.sanitize_id(assembly_id)

    def _temp_path(self, target: Path) -> Path:
        return target.with_name(f"{target.name}.tmp-{uuid.uuid4().hex}")

    def has_chunk(self, assembly_id: str, index: int) -> bool:
        return self.chunk_path(assembly_id, index).is_file()

    def merged_exists(self, assembly_id: str) -> bool:
        return self.merged_path(assembly_id).is_file()

    # -------- Запись чанка --------
    def put(self, assembly_id: str, index: int, payload: bytes, expected_digest: str) -> Path:
        """
        Проверить хэш и сохранить чанк, перезаписав прежний с тем же номером.

        Raises:
            EmptyPayloadError: пустой чанк
            DigestMismatchError: хэш не совпал, на диск ничего не записано
            StorageWriteError: ошибка ввода-вывода
        """

        if not payload:
            raise EmptyPayloadError(f"Чанк {index} для {assembly_id} пуст")

        if not verify_digest(payload, expected_digest, self.algorithm):
            raise DigestMismatchError(
                index, normalize_digest(expected_digest), compute_digest(payload, self.algorithm)
            )

        target = self.chunk_path(assembly_id, index)
        temp = self._temp_path(target)
        try:
            with open(temp, "wb") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp, target)
        except OSError as exc:
            temp.unlink(missing_ok=True)
            raise StorageWriteError(f"Не удалось сохранить чанк {target.name}: {exc}") from exc

        logger.debug("Чанк сохранён: %s (%d байт)", target.name, len(payload))
        return target

    # -------- Перечисление --------
    def list_indices(self, assembly_id: str) -> List[int]:
        """Номера всех сохранённых чанков сборки по возрастанию."""

        prefix = f"{self.sanitize_id(assembly_id)}.part"
        indices: List[int] = []
        for path in self.root.iterdir():
            suffix = path.name[len(prefix) :]
            if path.name.startswith(prefix) and suffix.isdigit() and path.is_file():
                indices.append(int(suffix))
        return sorted(indices)

    def present_count(self, assembly_id: str, total: int) -> int:
        return sum(1 for index in range(1, total + 1) if self.has_chunk(assembly_id, index))

    # -------- Чтение и сборка --------
    def read_all_in_order(self, assembly_id: str, total: int) -> Iterator[bytes]:
        """
        Выдать содержимое чанков 1..total по порядку.

        Наличие всех чанков проверяется до чтения первого, отсутствующий
        номер сразу даёт MissingChunkError.
        """

        paths = [self.chunk_path(assembly_id, index) for index in range(1, total + 1)]
        for index, path in enumerate(paths, start=1):
            if not path.is_file():
                raise MissingChunkError(assembly_id, index)
        return self._iter_payloads(assembly_id, paths)

    def _iter_payloads(self, assembly_id: str, paths: List[Path]) -> Iterator[bytes]:
        for index, path in enumerate(paths, start=1):
            try:
                yield path.read_bytes()
            except FileNotFoundError as exc:
                raise MissingChunkError(assembly_id, index) from exc

    def merge_into(self, assembly_id: str, total: int, destination: Optional[Path] = None) -> int:
        """
        Склеить чанки по возрастанию номеров во временный файл и атомарно
        переместить его на место итогового. Возвращает число записанных байт.
        """

        target = Path(destination) if destination is not None else self.merged_path(assembly_id)
        payloads = self.read_all_in_order(assembly_id, total)
        temp = self._temp_path(target)
        written = 0
        try:
            with open(temp, "wb") as handle:
                for payload in payloads:
                    handle.write(payload)
                    written += len(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp, target)
        except MissingChunkError:
            temp.unlink(missing_ok=True)
            raise
        except OSError as exc:
            temp.unlink(missing_ok=True)
            raise StorageWriteError(f"Не удалось записать {target.name}: {exc}") from exc

        logger.info("Файл собран: %s (%d чанков, %d байт)", target.name, total, written)
        return written

    # -------- Удаление --------
    def delete_all(self, assembly_id: str, total: int) -> int:
        """Удалить чанки 1..total. Ошибки отдельных файлов только логируются."""

        removed = 0
        for index in range(1, total + 1):
            path = self.chunk_path(assembly_id, index)
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("Не удалось удалить чанк %s: %s", path.name, exc)
        logger.info("Удалено чанков %s: %d из %d", self.sanitize_id(assembly_id), removed, total)
        return removed

