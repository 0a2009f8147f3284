from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict

from utils import to_utc_iso

__all__ = [
    "ScheduleStatus", "TERMINAL_STATUSES",
    "ScheduleRecord",
    "Destination",
]

# ----------------- Schedule 数据模型 ----------------
class ScheduleStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = frozenset({ScheduleStatus.SENT, ScheduleStatus.FAILED, ScheduleStatus.CANCELLED})


@dataclass
class ScheduleRecord:
    id: str  # 笔记 ID, 每条笔记最多一条提醒
    schedule_time: datetime  # UTC, 带时区
    destination_id: str
    message: str
    mention_all: bool = False
    status: ScheduleStatus = ScheduleStatus.PENDING
    revision: int = 0  # 每次重新提交自增, 用于识别过期的触发回写

    def to_wire(self) -> Dict[str, Any]:
        """转换为前端使用的驼峰字段"""
        return {
            "id": self.id,
            "scheduleTime": to_utc_iso(self.schedule_time),
            "destinationId": self.destination_id,
            "message": self.message,
            "mentionAll": self.mention_all,
            "status": self.status.value,
        }


# ----------------- Destination 数据模型 ----------------
@dataclass(frozen=True)
class Destination:
    id: str
    name: str
    url: str
    mention: str = "<users/all>"  # Google Chat 的 @所有人 语法

    def render(self, message: str, mention_all: bool) -> str:
        return f"{self.mention} {message}" if mention_all else message
