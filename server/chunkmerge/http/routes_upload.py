"""Маршруты приёма чанков и запуска сборки."""

from __future__ import annotations

from fastapi import APIRouter, File, Form, HTTPException, Request, UploadFile, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import ORJSONResponse

from ..coordinator import AssemblyCoordinator, ChunkAcceptResult, ChunkStatus
from ..exceptions import EmptyPayloadError, InvalidChunkError, StorageWriteError
from ..models import ChunkAcceptResponse, MergeRequest, MergeTriggerResponse

router = APIRouter()

_STATUS_CODES = {
    ChunkStatus.ACCEPTED: status.HTTP_200_OK,
    ChunkStatus.ASSEMBLY_COMPLETE: status.HTTP_202_ACCEPTED,
    ChunkStatus.DIGEST_MISMATCH: status.HTTP_422_UNPROCESSABLE_ENTITY,
}


def _get_coordinator(request: Request) -> AssemblyCoordinator:
    return request.app.state.coordinator


def _get_sse(request: Request):
    return request.app.state.sse


def _too_large(max_size: int) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
        detail=f"Чанк больше допустимых {max_size} байт.",
    )


def _message(result: ChunkAcceptResult) -> str:
    if result.status is ChunkStatus.DIGEST_MISMATCH:
        return f"Контрольная сумма чанка {result.index} не совпала, отправьте его повторно."
    if result.status is ChunkStatus.ASSEMBLY_COMPLETE:
        return "Все чанки получены, файл собирается."
    return f"Чанк {result.index} из {result.total} принят."


@router.post("/upload", response_model=ChunkAcceptResponse)
async def upload_chunk(
    request: Request,
    file: UploadFile = File(...),
    md5: str = Form(..., description="Хэш содержимого чанка в hex"),
    chunk_number: int = Form(..., alias="chunkNumber"),
    total_chunks: int = Form(..., alias="totalChunks"),
):
    """Приём очередного чанка; имя файла служит идентификатором сборки."""

    if not file.filename:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Не передано имя файла.")

    max_size = request.app.state.settings.max_chunk_size
    if max_size and file.size is not None and file.size > max_size:
        raise _too_large(max_size)
    # размер части может быть неизвестен, поэтому читаем не больше лимита плюс один байт
    payload = await file.read(max_size + 1) if max_size else await file.read()
    if max_size and len(payload) > max_size:
        raise _too_large(max_size)

    coordinator = _get_coordinator(request)
    try:
        result = await run_in_threadpool(
            coordinator.accept_chunk,
            file.filename,
            chunk_number,
            total_chunks,
            payload,
            md5,
        )
    except EmptyPayloadError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Чанк пуст.")
    except InvalidChunkError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except StorageWriteError as exc:
        raise HTTPException(status_code=status.HTTP_507_INSUFFICIENT_STORAGE, detail=str(exc))

    body = ChunkAcceptResponse(
        status=result.status.value,
        assembly_id=result.assembly_id,
        index=result.index,
        total=result.total,
        triggered_merge=result.triggered_merge,
        message=_message(result),
    )
    await _get_sse(request).publish("chunk", body.model_dump())
    return ORJSONResponse(status_code=_STATUS_CODES[result.status], content=body.model_dump())


@router.post("/merge", response_model=MergeTriggerResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_merge(payload: MergeRequest, request: Request) -> MergeTriggerResponse:
    """Повторный запуск сборки, например после ошибки записи."""

    coordinator = _get_coordinator(request)
    total = payload.total
    if total is None:
        # собранная сборка выпадает из кэша, поэтому total берётся до запуска
        record = coordinator.status(payload.assembly_id)
        total = record.total if record else None
    try:
        coordinator.retrigger(payload.assembly_id, total)
    except InvalidChunkError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    return MergeTriggerResponse(assembly_id=coordinator.store.sanitize_id(payload.assembly_id), total=total)
