"""Исключения процесса приёма и сборки чанков."""

from __future__ import annotations


class ChunkMergeError(Exception):
    """Базовое исключение сервиса."""


class EmptyPayloadError(ChunkMergeError):
    """Чанк без содержимого, отклоняется до записи на диск."""


class InvalidChunkError(ChunkMergeError):
    """Номер чанка вне диапазона 1..total или total не совпадает с ранее заявленным."""


class DigestMismatchError(ChunkMergeError):
    """Хэш содержимого не совпал с присланным; чанк нужно отправить заново."""

    def __init__(self, index: int, expected: str, actual: str) -> None:
        super().__init__(f"Контрольная сумма чанка {index} не совпала: ожидалось {expected}, получено {actual}")
        self.index = index
        self.expected = expected
        self.actual = actual


class StorageWriteError(ChunkMergeError):
    """Ошибка ввода-вывода при записи чанка или собранного файла."""


class MissingChunkError(ChunkMergeError):
    """При сборке не найден один из чанков."""

    def __init__(self, assembly_id: str, index: int) -> None:
        super().__init__(f"Отсутствует чанк {index} для {assembly_id}")
        self.assembly_id = assembly_id
        self.index = index
