"""Pydantic-модели HTTP-ответов и запросов."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, validator


class ChunkAcceptResponse(BaseModel):
    status: str = Field(..., description="accepted | digest_mismatch | assembly_complete")
    assembly_id: str
    index: int
    total: int
    triggered_merge: bool = False
    message: str = ""


class MergeRequest(BaseModel):
    assembly_id: str
    total: Optional[int] = Field(None, description="Число чанков, если сервер его не помнит")

    @validator("total")
    def positive(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v <= 0:
            raise ValueError("total должен быть положительным")
        return v


class MergeTriggerResponse(BaseModel):
    assembly_id: str
    total: int
    scheduled: bool = True


class StatusResponse(BaseModel):
    assembly_id: str
    state: str
    total: Optional[int] = None
    present_count: int = 0
    merged: bool = False
    size_bytes: Optional[int] = None
    last_error: Optional[str] = None
    updated_at: Optional[datetime] = None
