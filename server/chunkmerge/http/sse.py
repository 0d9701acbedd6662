"""Менеджер событий Server-Sent Events."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncGenerator, Dict, Optional, Set

logger = logging.getLogger(__name__)


class SSEManager:
    """
    Брокер SSE с широковещательной рассылкой.

    Результаты сборки приходят из рабочих потоков, поэтому кроме publish есть
    publish_from_thread, который передаёт событие в цикл, привязанный через
    bind_loop.
    """

    def __init__(self, queue_size: int = 100) -> None:
        self._subscribers: Set[asyncio.Queue[str]] = set()
        self._lock = asyncio.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.queue_size = queue_size

    def bind_loop(self, loop: Optional[asyncio.AbstractEventLoop]) -> None:
        self._loop = loop

    async def subscribe(self) -> AsyncGenerator[str, None]:
        queue: asyncio.Queue[str] = asyncio.Queue(self.queue_size)
        async with self._lock:
            self._subscribers.add(queue)
        try:
            while True:
                msg = await queue.get()
                yield msg
        finally:
            async with self._lock:
                self._subscribers.discard(queue)

    async def publish(self, event: str, data: Dict) -> None:
        payload = self._format_event(event, data)
        async with self._lock:
            dead: Set[asyncio.Queue[str]] = set()
            for queue in self._subscribers:
                try:
                    queue.put_nowait(payload)
                except asyncio.QueueFull:
                    dead.add(queue)
            for queue in dead:
                self._subscribers.discard(queue)

    def publish_from_thread(self, event: str, data: Dict) -> bool:
        """Отправить событие из чужого потока. False, если цикл не запущен."""

        loop = self._loop
        if loop is None or loop.is_closed():
            logger.debug("SSE-цикл не привязан, событие %s не отправлено", event)
            return False
        future = asyncio.run_coroutine_threadsafe(self.publish(event, data), loop)
        future.add_done_callback(lambda f: self._log_failure(event, f))
        return True

    @staticmethod
    def _log_failure(event: str, future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Не удалось разослать SSE-событие %s", event, exc_info=exc)

    @staticmethod
    def _format_event(event: str, data: Dict) -> str:
        body = json.dumps(data, ensure_ascii=False)
        return f"event: {event}\ndata: {body}\n\n"
