"""调度引擎

# 状态机
PENDING -> SENT / FAILED / CANCELLED, 三个终态只能被同一笔记的新提交覆盖回 PENDING。

# 一致性
- 数据库是唯一可信来源, 定时器注册表只是可重建的缓存;
- 同一笔记的 提交/取消/触发回写 通过按 ID 的 asyncio.Lock 串行化;
- 投递调用本身不持锁, HTTP 请求不会等待消息发送;
- 触发回写以 "status = PENDING AND revision = 触发时的 revision" 为条件,
  因此已取消、已被重新提交的记录不会被过期的投递结果覆盖。
"""

import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime
from functools import partial
from typing import Any, AsyncIterator

from config.destinations import DestinationTable
from datamodel import *
from errors import *
from events import Bus, E, bus as default_bus
from logger import logger
from scheduler.dispatcher import WebhookDispatcher
from scheduler.timers import TimerRegistry
from storage.schedule import ScheduleStore
from utils import parse_schedule_time, to_utc_iso

__all__ = ["ScheduleEngine"]


class _NoteLock:
    """按笔记 ID 的锁, users 为持有或等待该锁的协程数"""

    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class ScheduleEngine:
    def __init__(
        self,
        store: ScheduleStore,
        registry: TimerRegistry,
        dispatcher: WebhookDispatcher,
        destinations: DestinationTable,
        bus: Bus | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.dispatcher = dispatcher
        self.destinations = destinations
        self.bus = bus or default_bus

        self._locks: dict[str, _NoteLock] = {}
        self.reconciled = False
        self.last_reconcile: dict[str, Any] | None = None

    @asynccontextmanager
    async def _locked(self, note_id: str) -> AsyncIterator[None]:
        # 最后一个使用者离开时删除条目, 锁表大小只与并发中的笔记数有关
        entry = self._locks.get(note_id)
        if entry is None:
            entry = self._locks[note_id] = _NoteLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(note_id) is entry:
                del self._locks[note_id]

    def get_status(self) -> dict[str, object]:
        return {
            "armed_timers": len(self.registry),
            "reconciled": self.reconciled,
            "last_reconcile": self.last_reconcile,
            "store_connected": self.store.connected,
        }

    # ------------------------------------------------------------------
    # 提交
    # ------------------------------------------------------------------
    def _validate(
        self,
        note_id: Any,
        schedule_time: Any,
        destination_id: Any,
        message: Any,
        mention_all: Any,
    ) -> ScheduleRecord:
        missing = [
            name for name, value in (
                ("id", note_id),
                ("scheduleTime", schedule_time),
                ("destinationId", destination_id),
                ("message", message),
            )
            if value is None or value == ""
        ]
        if missing:
            raise MissingFieldsError(missing)

        if not isinstance(message, str):
            raise ValidationError("message 必须是字符串")
        if not isinstance(schedule_time, (str, datetime)):
            raise ValidationError(f"scheduleTime 必须是 ISO-8601 字符串: {schedule_time!r}")
        try:
            when = parse_schedule_time(schedule_time)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"scheduleTime 不是合法的 ISO-8601 时间: {schedule_time!r}") from e

        destination_id = str(destination_id)
        if destination_id not in self.destinations:
            raise UnknownDestinationError(destination_id)

        return ScheduleRecord(
            id=str(note_id),
            schedule_time=when,
            destination_id=destination_id,
            message=message,
            mention_all=bool(mention_all),
        )

    async def submit(
        self,
        note_id: Any,
        schedule_time: str | datetime,
        destination_id: str,
        message: str,
        mention_all: bool = False,
    ) -> ScheduleRecord:
        """提交(或覆盖)一条提醒

        校验失败/目的地未知时不触碰存储与定时器; 存储不可用时旧定时器保持不变。
        计划时间已过的提交会被接受, 但直接标记为 FAILED, 与启动对账的策略一致。
        upsert 成功后写 FAILED 时数据库不可用, 提交仍视为已接受, 记录保持 PENDING,
        由下次启动对账标记为 FAILED。
        """
        record = self._validate(note_id, schedule_time, destination_id, message, mention_all)

        marked_failed = False
        async with self._locked(record.id):
            stored = await self.store.upsert(record)
            self.registry.disarm(stored.id)
            armed = self._arm(stored)
            if not armed:
                try:
                    marked_failed = await self.store.update_status(
                        stored.id, ScheduleStatus.FAILED,
                        expected=ScheduleStatus.PENDING, revision=stored.revision,
                    )
                except StoreUnavailableError as e:
                    logger.warning(f"提醒 {stored.id} 已过期但无法标记为 FAILED, 保持 PENDING 等待启动对账: {e}")
                if marked_failed:
                    stored.status = ScheduleStatus.FAILED

        self.bus.emit(E.SCHEDULE_SUBMITTED, note_id=stored.id, schedule_time=stored.schedule_time)
        if armed:
            logger.info(f"提醒 {stored.id} 已安排于 {to_utc_iso(stored.schedule_time)} 发送到 {stored.destination_id}")
        elif marked_failed:
            logger.warning(f"提醒 {stored.id} 的计划时间 {to_utc_iso(stored.schedule_time)} 已过, 直接标记为 FAILED")
            self.bus.emit(E.SCHEDULE_FAILED, note_id=stored.id, reason="past_due", latency_ms=None)
        return stored

    def _arm(self, record: ScheduleRecord) -> bool:
        handle = self.registry.arm(record.id, record.schedule_time, partial(self._fire, record))
        return handle is not None

    # ------------------------------------------------------------------
    # 取消
    # ------------------------------------------------------------------
    async def cancel(self, note_id: Any) -> bool:
        """取消提醒, 幂等; 返回是否确实把一条 PENDING 记录改成了 CANCELLED"""
        note_id = str(note_id)
        async with self._locked(note_id):
            handle = self.registry.get(note_id)
            if handle is not None and handle.firing:
                logger.info(f"提醒 {note_id} 正在投递中, 取消不生效, 以投递结果为准")
                return False
            self.registry.disarm(note_id)
            cancelled = await self.store.update_status(
                note_id, ScheduleStatus.CANCELLED, expected=ScheduleStatus.PENDING,
            )

        if cancelled:
            logger.info(f"提醒 {note_id} 已取消")
            self.bus.emit(E.SCHEDULE_CANCELLED, note_id=note_id)
        else:
            logger.debug(f"提醒 {note_id} 没有待发送的记录, 取消请求忽略")
        return cancelled

    # ------------------------------------------------------------------
    # 触发
    # ------------------------------------------------------------------
    async def _fire(self, record: ScheduleRecord) -> None:
        handle = self.registry.get(record.id)
        logger.info(f"提醒 {record.id} 到点, 开始投递到 {record.destination_id}")

        started = time.perf_counter()
        reason = None
        try:
            await self.dispatcher.send(record.destination_id, record.message, record.mention_all)
        except UnresolvedDestinationError as e:
            reason = e.reason
            logger.warning(f"提醒 {record.id} 投递失败(目的地已不在配置中): {e}")
        except TransportFailureError as e:
            reason = e.reason
            logger.error(f"提醒 {record.id} 投递失败(传输错误): {e}")
        except Exception:
            reason = "unexpected_error"
            logger.exception(f"提醒 {record.id} 投递时出现未预期的异常")
        latency_ms = (time.perf_counter() - started) * 1000
        status = ScheduleStatus.SENT if reason is None else ScheduleStatus.FAILED

        async with self._locked(record.id):
            try:
                applied = await self.store.update_status(
                    record.id, status,
                    expected=ScheduleStatus.PENDING, revision=record.revision,
                )
            except StoreUnavailableError as e:
                logger.error(f"提醒 {record.id} 投递结果 {status.value} 无法写入数据库: {e}")
                return
            finally:
                self.registry.disarm(record.id, handle)

        if not applied:
            logger.info(f"提醒 {record.id} 在投递期间已被取消或重新提交, 丢弃结果 {status.value}")
            return

        if status is ScheduleStatus.SENT:
            logger.info(f"提醒 {record.id} 已发送 ({latency_ms:.0f} ms)")
            self.bus.emit(E.SCHEDULE_SENT, note_id=record.id, latency_ms=latency_ms)
        else:
            self.bus.emit(E.SCHEDULE_FAILED, note_id=record.id, reason=reason, latency_ms=latency_ms)

    # ------------------------------------------------------------------
    # 启动对账
    # ------------------------------------------------------------------
    async def reconcile(self) -> dict[str, Any] | None:
        """根据数据库中的 PENDING 记录重建定时器; 已过期的记录直接标记为 FAILED, 绝不补发

        数据库不可用时只记录错误并返回 None, 进程以空注册表降级运行。
        """
        try:
            pending = await self.store.list_pending()
        except StoreUnavailableError as e:
            logger.error(f"启动对账失败, 数据库不可用, 以空定时器表继续运行: {e}")
            return None

        logger.info(f"找到 {len(pending)} 条待发送的提醒, 开始对账")
        armed, expired = 0, 0
        try:
            for record in pending:
                async with self._locked(record.id):
                    if self.registry.has(record.id):
                        continue
                    if self._arm(record):
                        armed += 1
                        continue
                    updated = await self.store.update_status(
                        record.id, ScheduleStatus.FAILED,
                        expected=ScheduleStatus.PENDING, revision=record.revision,
                    )
                if updated:
                    expired += 1
                    logger.warning(f"提醒 {record.id} 在停机期间已过期({to_utc_iso(record.schedule_time)}), 标记为 FAILED")
                    self.bus.emit(E.SCHEDULE_FAILED, note_id=record.id, reason="missed", latency_ms=None)
        except StoreUnavailableError as e:
            logger.error(f"对账过程中数据库不可用, 已中止: {e}")
            return None

        self.reconciled = True
        self.last_reconcile = {"pending": len(pending), "armed": armed, "expired": expired}
        logger.info(f"对账完成: 重新设置 {armed} 个定时器, {expired} 条过期提醒标记为 FAILED")
        return self.last_reconcile

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------
    async def history(self) -> list[ScheduleRecord]:
        return await self.store.list_all()

    def list_destinations(self) -> list[dict[str, str]]:
        return self.destinations.listing()

    def shutdown(self) -> None:
        """进程退出前取消所有未触发的定时器, 记录保持 PENDING, 下次启动时重新对账"""
        count = len(self.registry)
        self.registry.disarm_all()
        logger.info(f"已取消 {count} 个定时器")
