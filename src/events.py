"""事件总线模块，定义了事件总线类 Bus 及事件名集合 E

调度引擎在状态成功落库之后发出事件, 订阅方(指标统计等)不得反过来修改调度状态。
"""

from __future__ import annotations
from pyee.asyncio import AsyncIOEventEmitter
from typing import Any, Callable

from logger import logger

Handler = Callable[..., Any]

# 事件名集中定义
class E:
    SCHEDULE_SUBMITTED = "schedule.submitted"
    SCHEDULE_CANCELLED = "schedule.cancelled"
    SCHEDULE_SENT = "schedule.sent"
    SCHEDULE_FAILED = "schedule.failed"


class Bus(AsyncIOEventEmitter):
    def on(self, event: str) -> Callable[[Handler], Handler]:
        """注册事件处理器装饰器"""
        def decorator(handler: Handler) -> Handler:
            logger.debug(f"注册事件处理器: {event} -> {handler.__name__}")
            super(Bus, self).on(event, handler)
            return handler

        return decorator


bus = Bus()

__all__ = ["bus", "Bus", "E"]
