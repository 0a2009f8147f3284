"""定时器注册表

笔记 ID -> 可取消的定时器句柄。只是"接下来要触发什么"的内存缓存, 进程重启后由数据库中的
PENDING 记录重建, 任何时候都不作为状态的可信来源。

约定:
- 同一 ID 最多只有一个存活的定时器, 重新 arm 会先取消旧的;
- 触发时间不在未来时 arm 直接返回 None, 由调用方自行处理"已过期"的情况;
- 回调开始执行后句柄进入 firing 状态, 此后 disarm 只移除登记, 不会打断正在进行的投递;
  而在回调开始前 disarm 的定时器保证不会再触发。
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable

from logger import logger
from utils import now_utc, to_utc_iso

__all__ = ["FireCallback", "TimerHandle", "TimerRegistry", "AsyncioTimerRegistry"]

FireCallback = Callable[[], Awaitable[None]]


@dataclass(eq=False)
class TimerHandle:
    note_id: str
    fire_at: datetime
    callback: FireCallback
    firing: bool = False
    task: asyncio.Task | None = field(default=None, repr=False)


class TimerRegistry(ABC):
    def __init__(self) -> None:
        self._handles: dict[str, TimerHandle] = {}

    def has(self, note_id: str) -> bool:
        return note_id in self._handles

    def get(self, note_id: str) -> TimerHandle | None:
        return self._handles.get(note_id)

    def __len__(self) -> int:
        return len(self._handles)

    def arm(self, note_id: str, fire_at: datetime, callback: FireCallback) -> TimerHandle | None:
        delay = (fire_at - now_utc()).total_seconds()
        if delay <= 0:
            logger.debug(f"提醒 {note_id} 的时间 {to_utc_iso(fire_at)} 已过, 不设置定时器")
            return None

        self.disarm(note_id)
        handle = TimerHandle(note_id=note_id, fire_at=fire_at, callback=callback)
        self._start(handle, delay)
        self._handles[note_id] = handle
        logger.trace(f"定时器已设置: id={note_id}, fire_at={to_utc_iso(fire_at)}, delay={delay:.1f}s")
        return handle

    def disarm(self, note_id: str, handle: TimerHandle | None = None) -> None:
        """取消并移除 note_id 的定时器; 传入 handle 时仅当登记的正是该句柄才移除"""
        current = self._handles.get(note_id)
        if current is None or (handle is not None and current is not handle):
            return
        del self._handles[note_id]
        if not current.firing:
            self._stop(current)
            logger.trace(f"定时器已取消: id={note_id}")

    def disarm_all(self) -> None:
        for note_id in list(self._handles):
            self.disarm(note_id)

    def _begin_fire(self, handle: TimerHandle) -> bool:
        """到点后由具体实现调用; 句柄已被替换/取消时返回 False"""
        if self._handles.get(handle.note_id) is not handle:
            return False
        handle.firing = True
        return True

    @abstractmethod
    def _start(self, handle: TimerHandle, delay: float) -> None:
        pass

    @abstractmethod
    def _stop(self, handle: TimerHandle) -> None:
        pass


class AsyncioTimerRegistry(TimerRegistry):
    """基于 asyncio 任务的实现: sleep 到点后执行回调"""

    def _start(self, handle: TimerHandle, delay: float) -> None:
        handle.task = asyncio.create_task(
            self._run(handle, delay),
            name=f"schedule-timer-{handle.note_id}",
        )

    def _stop(self, handle: TimerHandle) -> None:
        if handle.task is not None and not handle.task.done():
            handle.task.cancel()

    async def _run(self, handle: TimerHandle, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return

        if not self._begin_fire(handle):
            return
        try:
            await handle.callback()
        except Exception:
            logger.exception(f"提醒 {handle.note_id} 的定时器回调异常")
        finally:
            # 回调自身没有清理登记时兜底, 不影响之后重新设置的定时器
            self.disarm(handle.note_id, handle)
