"""Отслеживание готовности сборок и однократный запуск склейки."""

from __future__ import annotations

import enum
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from .exceptions import DigestMismatchError, InvalidChunkError, MissingChunkError, StorageWriteError
from .pipelines.metrics import MetricAggregator
from .storage import ChunkStore

logger = logging.getLogger(__name__)


class Action(str, enum.Enum):
    """Решение по очередному уведомлению о чанке."""

    NONE = "none"
    TRIGGER_MERGE = "trigger_merge"


class AssemblyState(str, enum.Enum):
    RECEIVING = "receiving"
    COMPLETING = "completing"
    MERGED = "merged"
    MERGE_FAILED = "merge_failed"


class ChunkStatus(str, enum.Enum):
    ACCEPTED = "accepted"
    DIGEST_MISMATCH = "digest_mismatch"
    ASSEMBLY_COMPLETE = "assembly_complete"


class MergeOutcome(str, enum.Enum):
    MERGED = "merged"
    ALREADY_MERGED = "already_merged"
    IN_PROGRESS = "in_progress"
    STALE = "stale"
    FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class AssemblyRecord:
    """Кэш состояния сборки. Готовность всегда проверяется по диску."""

    assembly_id: str
    total: Optional[int]
    state: AssemblyState = AssemblyState.RECEIVING
    last_error: Optional[str] = None
    size_bytes: Optional[int] = None
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass(slots=True)
class MergeReport:
    assembly_id: str
    outcome: MergeOutcome
    total: int
    size_bytes: int = 0
    duration: float = 0.0
    error: Optional[str] = None

    def as_event(self) -> Dict[str, object]:
        return {
            "assembly_id": self.assembly_id,
            "outcome": self.outcome.value,
            "total": self.total,
            "size_bytes": self.size_bytes,
            "duration": round(self.duration, 6),
            "error": self.error,
        }


@dataclass(slots=True)
class ChunkAcceptResult:
    status: ChunkStatus
    assembly_id: str
    index: int
    total: int
    triggered_merge: bool = False
    merge: Optional[Future] = None


MergeListener = Callable[[MergeReport], None]


class AssemblyCoordinator:
    """
    Решает, когда сборка готова, и запускает склейку не более одного раза.

    Готовность считается по числу чанков, реально лежащих в ChunkStore, а не
    по счётчику в памяти, поэтому переживает перезапуск процесса. Любое
    уведомление может заметить готовность, но тело склейки выполняет только
    тот, кто захватил блокировку сборки.
    """

    def __init__(
        self,
        store: ChunkStore,
        max_workers: int = 4,
        metrics: Optional[MetricAggregator] = None,
    ) -> None:
        self.store = store
        self.metrics = metrics
        self.max_workers = max_workers
        self._executor: Optional[ThreadPoolExecutor] = None
        self._records: Dict[str, AssemblyRecord] = {}
        self._merge_locks: Dict[str, threading.Lock] = {}
        self._listeners: List[MergeListener] = []
        self._lock = threading.RLock()

    # -------- Приём чанков --------
    def accept_chunk(
        self,
        assembly_id: str,
        index: int,
        total: int,
        payload: bytes,
        digest: str,
    ) -> ChunkAcceptResult:
        """
        Сохранить чанк и, если он оказался последним недостающим, запустить
        склейку в фоне.

        Несовпадение хэша возвращается как результат, а не исключение: это
        штатная ситуация, загрузчик просто отправляет чанк ещё раз.
        """

        start = time.perf_counter()
        self._validate(index, total)
        # total фиксируется до записи, иначе два первых чанка с разным total оба попадут на диск
        self._register(self.store.sanitize_id(assembly_id), total)

        try:
            self.store.put(assembly_id, index, payload, digest)
        except DigestMismatchError as exc:
            logger.warning("Чанк %d/%d для %s отклонён: %s", index, total, assembly_id, exc)
            self._record_chunk(len(payload), start, ChunkStatus.DIGEST_MISMATCH)
            return ChunkAcceptResult(ChunkStatus.DIGEST_MISMATCH, assembly_id, index, total)

        action = self.notify_arrived(assembly_id, index, total)
        if action is Action.TRIGGER_MERGE:
            future = self.schedule_merge(assembly_id, total)
            result = ChunkAcceptResult(
                ChunkStatus.ASSEMBLY_COMPLETE,
                assembly_id,
                index,
                total,
                triggered_merge=True,
                merge=future,
            )
        else:
            result = ChunkAcceptResult(ChunkStatus.ACCEPTED, assembly_id, index, total)

        self._record_chunk(len(payload), start, result.status)
        return result

    def notify_arrived(self, assembly_id: str, index: int, total: int) -> Action:
        """Сравнить число чанков на диске с total и решить, пора ли склеивать."""

        self._validate(index, total)
        key = self.store.sanitize_id(assembly_id)
        self._register(key, total)

        present = self.store.present_count(assembly_id, total)
        if present < total:
            logger.info("Чанк %d/%d для %s принят, на диске %d", index, total, key, present)
            return Action.NONE

        with self._lock:
            record = self._register(key, total)
            if record.state is AssemblyState.MERGE_FAILED:
                logger.info("Повторный запуск сборки %s после ошибки", key)
            record.state = AssemblyState.COMPLETING
            record.updated_at = _utcnow()
        logger.info("Все %d чанков %s на месте, запускаем сборку", total, key)
        return Action.TRIGGER_MERGE

    # -------- Запуск склейки --------
    def schedule_merge(self, assembly_id: str, total: int) -> "Future[MergeReport]":
        future = self._get_executor().submit(self.run_merge, assembly_id, total)
        future.add_done_callback(lambda f: self._on_merge_done(assembly_id, total, f))
        return future

    def retrigger(self, assembly_id: str, total: Optional[int] = None) -> "Future[MergeReport]":
        """Явный повторный запуск сборки оператором."""

        key = self.store.sanitize_id(assembly_id)
        if total is None:
            with self._lock:
                record = self._records.get(key)
                total = record.total if record else None
        if total is None:
            raise InvalidChunkError(f"Число чанков для {key} неизвестно, передайте total")
        self._validate(1, total)
        self._register(key, total)
        self._transition(key, AssemblyState.COMPLETING)
        logger.info("Сборка %s запущена вручную", key)
        return self.schedule_merge(assembly_id, total)

    def run_merge(self, assembly_id: str, total: int) -> MergeReport:
        """Тело склейки. Выполняется под блокировкой сборки; если она занята, запуск пропускается."""

        key = self.store.sanitize_id(assembly_id)
        lock = self._merge_lock(key)
        if not lock.acquire(blocking=False):
            logger.info("Сборка %s уже выполняется, повторный запуск пропущен", key)
            report = MergeReport(key, MergeOutcome.IN_PROGRESS, total)
            self._publish(report)
            return report

        start = time.perf_counter()
        try:
            report = self._merge_locked(key, assembly_id, total)
        finally:
            lock.release()
        report.duration = time.perf_counter() - start
        self._publish(report)
        return report

    def _merge_locked(self, key: str, assembly_id: str, total: int) -> MergeReport:
        if self.store.merged_exists(assembly_id):
            # сборка уже была, чанки могли остаться после падения до удаления
            if self.store.present_count(assembly_id, total):
                self.store.delete_all(assembly_id, total)
            size = self.store.merged_path(assembly_id).stat().st_size
            self._forget(key)
            logger.info("Файл %s уже собран, пропускаем", key)
            return MergeReport(key, MergeOutcome.ALREADY_MERGED, total, size_bytes=size)

        present = self.store.present_count(assembly_id, total)
        if present != total:
            logger.warning("Устаревший запуск сборки %s: на диске %d из %d", key, present, total)
            self._transition(key, AssemblyState.RECEIVING)
            return MergeReport(
                key,
                MergeOutcome.STALE,
                total,
                error=f"на диске {present} из {total} чанков",
            )

        try:
            size = self.store.merge_into(assembly_id, total)
        except (StorageWriteError, MissingChunkError) as exc:
            logger.error("Сборка %s не удалась, чанки сохранены: %s", key, exc)
            self._transition(key, AssemblyState.MERGE_FAILED, error=str(exc))
            return MergeReport(key, MergeOutcome.FAILED, total, error=str(exc))

        self.store.delete_all(assembly_id, total)
        self._forget(key)
        return MergeReport(key, MergeOutcome.MERGED, total, size_bytes=size)

    def _on_merge_done(self, assembly_id: str, total: int, future: "Future[MergeReport]") -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is None:
            return
        key = self.store.sanitize_id(assembly_id)
        logger.error("Непредвиденная ошибка сборки %s", key, exc_info=exc)
        self._transition(key, AssemblyState.MERGE_FAILED, error=str(exc))
        self._publish(MergeReport(key, MergeOutcome.FAILED, total, error=str(exc)))

    # -------- Состояние --------
    def status(self, assembly_id: str) -> Optional[AssemblyRecord]:
        """Снимок состояния сборки; после перезапуска восстанавливается по диску."""

        key = self.store.sanitize_id(assembly_id)
        with self._lock:
            record = self._records.get(key)
            if record is not None:
                return replace(record)

        if self.store.merged_exists(assembly_id):
            return AssemblyRecord(
                assembly_id=key,
                total=None,
                state=AssemblyState.MERGED,
                size_bytes=self.store.merged_path(assembly_id).stat().st_size,
            )
        if self.store.list_indices(assembly_id):
            return AssemblyRecord(assembly_id=key, total=None)
        return None

    def add_listener(self, listener: MergeListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def shutdown(self, wait: bool = True) -> None:
        """Дождаться запущенных сборок. Следующий запуск создаст новый пул."""

        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)

    # -------- Внутреннее --------
    @staticmethod
    def _validate(index: int, total: int) -> None:
        if total < 1:
            raise InvalidChunkError(f"Число чанков должно быть положительным, получено {total}")
        if not 1 <= index <= total:
            raise InvalidChunkError(f"Номер чанка {index} вне диапазона 1..{total}")

    def _register(self, key: str, total: int) -> AssemblyRecord:
        """Проверить и запомнить total одним шагом под блокировкой реестра."""

        with self._lock:
            record = self._records.get(key)
            if record is None:
                record = AssemblyRecord(assembly_id=key, total=total)
                self._records[key] = record
            elif record.total is None:
                record.total = total
            elif record.total != total:
                raise InvalidChunkError(f"Для {key} уже заявлено {record.total} чанков, получено {total}")
            return record

    def _forget(self, key: str) -> None:
        # собранную сборку описывает файл на диске, держать её в памяти незачем
        with self._lock:
            self._records.pop(key, None)
            self._merge_locks.pop(key, None)

    def _transition(
        self,
        key: str,
        state: AssemblyState,
        error: Optional[str] = None,
        size_bytes: Optional[int] = None,
    ) -> None:
        with self._lock:
            record = self._records.setdefault(key, AssemblyRecord(assembly_id=key, total=None))
            record.state = state
            record.last_error = error
            if size_bytes is not None:
                record.size_bytes = size_bytes
            record.updated_at = _utcnow()

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="merge")
            return self._executor

    def _merge_lock(self, key: str) -> threading.Lock:
        with self._lock:
            return self._merge_locks.setdefault(key, threading.Lock())

    def _publish(self, report: MergeReport) -> None:
        if self.metrics is not None:
            self.metrics.record_merge(report.size_bytes, report.duration, report.outcome.value)
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(report)
            except Exception:  # noqa: BLE001
                logger.exception("Обработчик результата сборки %s упал", report.assembly_id)

    def _record_chunk(self, num_bytes: int, start: float, status: ChunkStatus) -> None:
        if self.metrics is not None:
            self.metrics.record_chunk(num_bytes, time.perf_counter() - start, status.value)
