"""提醒计划的持久化存储(唯一可信来源)

每条笔记最多一条记录, 以笔记 ID 为主键。所有数据库错误统一转换为 StoreUnavailableError。
"""

import asyncio
import sqlite3
from contextlib import asynccontextmanager
from typing import AsyncIterator

import aiosqlite

import storage.db_config as db_config
from datamodel import *
from errors import StoreUnavailableError
from logger import logger
from utils import from_utc_iso, to_utc_iso

__all__ = ["ScheduleStore"]

_COLUMNS = "id, schedule_time, destination_id, message, mention_all, status, revision"


def _row_to_record(row: tuple) -> ScheduleRecord:
    return ScheduleRecord(
        id=row[0],
        schedule_time=from_utc_iso(row[1]),
        destination_id=row[2],
        message=row[3],
        mention_all=bool(row[4]),
        status=ScheduleStatus(row[5]),
        revision=row[6],
    )


class ScheduleStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._connect_lock = asyncio.Lock()

    async def connect(self) -> aiosqlite.Connection:
        """连接缺失时(例如启动时数据库不可达)尝试重新打开"""
        if self._db is not None:
            return self._db
        async with self._connect_lock:
            if self._db is None:
                try:
                    self._db = await db_config.init_db(self.db_path)
                except (sqlite3.Error, OSError) as e:
                    raise StoreUnavailableError(f"无法打开数据库 {self.db_path}: {e}") from e
                logger.info(f"数据库连接已建立: {self.db_path}")
            return self._db

    async def close(self) -> None:
        if self._db is not None:
            db, self._db = self._db, None
            await db.close()

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[aiosqlite.Connection]:
        conn = await self.connect()
        try:
            yield conn
        except (sqlite3.ProgrammingError, ValueError) as e:
            # 连接已被关闭(aiosqlite 抛 ValueError), 丢弃它, 下次调用重新连接
            if self._db is conn:
                self._db = None
            raise StoreUnavailableError(f"数据库连接已失效: {e}") from e
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"数据库操作失败: {e}") from e

    @property
    def connected(self) -> bool:
        return self._db is not None

    async def upsert(self, record: ScheduleRecord) -> ScheduleRecord:
        """插入或整体替换该笔记的记录, 状态重置为 PENDING, revision 自增"""
        async with self._session() as conn:
            async with conn.execute(
                """
                INSERT INTO schedules (id, schedule_time, destination_id, message, mention_all, status, revision)
                VALUES (?, ?, ?, ?, ?, 'PENDING', 1)
                ON CONFLICT (id) DO UPDATE SET
                    schedule_time = excluded.schedule_time,
                    destination_id = excluded.destination_id,
                    message = excluded.message,
                    mention_all = excluded.mention_all,
                    status = 'PENDING',
                    revision = schedules.revision + 1,
                    updated_at_utc = CURRENT_TIMESTAMP
                RETURNING revision
                """,
                (record.id, to_utc_iso(record.schedule_time), record.destination_id,
                 record.message, int(record.mention_all)),
            ) as cursor:
                row = await cursor.fetchone()
            await conn.commit()

        stored = ScheduleRecord(
            id=record.id,
            schedule_time=record.schedule_time,
            destination_id=record.destination_id,
            message=record.message,
            mention_all=record.mention_all,
            status=ScheduleStatus.PENDING,
            revision=row[0],
        )
        logger.trace(f"写入提醒: id={stored.id}, schedule_time={to_utc_iso(stored.schedule_time)}, revision={stored.revision}")
        return stored

    async def update_status(
        self,
        note_id: str,
        status: ScheduleStatus,
        *,
        expected: ScheduleStatus | None = None,
        revision: int | None = None,
    ) -> bool:
        """条件更新状态, 返回是否真的更新了记录

        expected: 仅当当前状态等于该值时才更新(取消/触发回写都要求仍是 PENDING)
        revision: 仅当记录未被重新提交过时才更新
        """
        sql = "UPDATE schedules SET status = ?, updated_at_utc = CURRENT_TIMESTAMP WHERE id = ?"
        params: list = [status.value, note_id]
        if expected is not None:
            sql += " AND status = ?"
            params.append(expected.value)
        if revision is not None:
            sql += " AND revision = ?"
            params.append(revision)

        async with self._session() as conn:
            cursor = await conn.execute(sql, tuple(params))
            updated = cursor.rowcount > 0
            await cursor.close()
            await conn.commit()

        logger.trace(f"更新提醒状态: id={note_id}, status={status.value}, expected={expected}, revision={revision}, updated={updated}")
        return updated

    async def get(self, note_id: str) -> ScheduleRecord | None:
        async with self._session() as conn:
            async with conn.execute(f"SELECT {_COLUMNS} FROM schedules WHERE id = ?", (note_id,)) as cursor:
                row = await cursor.fetchone()
        return _row_to_record(row) if row else None

    async def list_pending(self) -> list[ScheduleRecord]:
        """获取所有 PENDING 记录, 仅在启动对账时使用"""
        async with self._session() as conn:
            async with conn.execute(
                f"SELECT {_COLUMNS} FROM schedules WHERE status = 'PENDING' ORDER BY schedule_time"
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_record(row) for row in rows]

    async def list_all(self) -> list[ScheduleRecord]:
        """历史记录, 按计划时间倒序"""
        async with self._session() as conn:
            async with conn.execute(
                f"SELECT {_COLUMNS} FROM schedules ORDER BY schedule_time DESC"
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_record(row) for row in rows]
