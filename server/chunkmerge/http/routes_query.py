"""Маршруты состояния и мониторинга."""

from __future__ import annotations

from typing import AsyncGenerator

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import JSONResponse, StreamingResponse

from ..coordinator import AssemblyCoordinator, AssemblyState
from ..models import StatusResponse

router = APIRouter()


def _get_coordinator(request: Request) -> AssemblyCoordinator:
    return request.app.state.coordinator


def _get_metrics(request: Request):
    return request.app.state.metrics


def _get_sse(request: Request):
    return request.app.state.sse


@router.get("/status", response_model=StatusResponse)
async def get_status(assembly_id: str, request: Request) -> StatusResponse:
    """Текущее состояние сборки."""

    coordinator = _get_coordinator(request)
    record = coordinator.status(assembly_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Сборка не найдена.")

    store = coordinator.store
    if record.total:
        present = store.present_count(assembly_id, record.total)
    else:
        present = len(store.list_indices(assembly_id))
    return StatusResponse(
        assembly_id=record.assembly_id,
        state=record.state.value,
        total=record.total,
        present_count=present,
        merged=record.state is AssemblyState.MERGED and store.merged_exists(assembly_id),
        size_bytes=record.size_bytes,
        last_error=record.last_error,
        updated_at=record.updated_at,
    )


@router.get("/metrics")
async def metrics_snapshot(request: Request):
    """Снимок текущих метрик."""

    return JSONResponse(_get_metrics(request).snapshot())


@router.get("/events")
async def sse_events(request: Request):
    """SSE-поток: приём чанков и результаты сборок."""

    async def event_stream() -> AsyncGenerator[str, None]:
        async for msg in _get_sse(request).subscribe():
            yield msg

    return StreamingResponse(event_stream(), media_type="text/event-stream")
