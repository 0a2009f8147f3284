from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field


@dataclass
class RuntimeControl:
    shutdown_event: asyncio.Event
    started_at: float


class ScheduleRequest(BaseModel):
    """字段全部可选且不限类型, 缺失或类型错误由调度引擎统一报 400 而不是 422"""
    model_config = ConfigDict(populate_by_name=True)

    id: Union[str, int, None] = None
    schedule_time: Any = Field(default=None, alias="scheduleTime")
    destination_id: Any = Field(default=None, alias="destinationId")
    message: Any = None
    mention_all: bool = Field(default=False, alias="mentionAll")


class ScheduleOut(BaseModel):
    id: str
    scheduleTime: str
    destinationId: str
    message: str
    mentionAll: bool
    status: str


class DestinationOut(BaseModel):
    id: str
    name: str
