"""Точка входа FastAPI-приложения."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI
from fastapi.responses import ORJSONResponse

from .config import Settings, settings as default_settings
from .coordinator import AssemblyCoordinator, MergeOutcome, MergeReport
from .http import routes_query, routes_upload
from .http.sse import SSEManager
from .logging_config import setup_logging
from .pipelines.metrics import MetricAggregator
from .storage import ChunkStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    app.state.sse.bind_loop(asyncio.get_running_loop())
    logger.info("Сервис запущен, каталог загрузок: %s", app.state.store.root)
    try:
        yield
    finally:
        app.state.sse.bind_loop(None)
        app.state.coordinator.shutdown(wait=True)
        logger.info("Сервис остановлен")


def create_app(config: Optional[Settings] = None) -> FastAPI:
    config = config or default_settings
    setup_logging("chunkmerge", config.log_level)

    app = FastAPI(
        title="Сборка файлов из чанков",
        description="Приём чанков с проверкой хэша и однократная склейка файла.",
        version="0.1.0",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )

    store = ChunkStore(config.upload_dir, config.digest_algorithm)
    metrics = MetricAggregator(config.metrics_window_seconds)
    coordinator = AssemblyCoordinator(store, max_workers=config.merge_workers, metrics=metrics)
    sse = SSEManager(config.sse_queue_size)

    def report_merge(report: MergeReport) -> None:
        if report.outcome is MergeOutcome.FAILED:
            logger.error("Сборка %s завершилась ошибкой: %s", report.assembly_id, report.error)
        sse.publish_from_thread("merge", report.as_event())

    coordinator.add_listener(report_merge)

    app.state.settings = config
    app.state.store = store
    app.state.metrics = metrics
    app.state.coordinator = coordinator
    app.state.sse = sse

    app.include_router(routes_upload.router, prefix="/api")
    app.include_router(routes_query.router, prefix="/api")

    @app.get("/")
    async def root():
        return {"message": "Загружайте чанки на POST /api/upload."}

    return app


app = create_app()
