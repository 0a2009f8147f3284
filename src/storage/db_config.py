import aiosqlite
import os
from pathlib import Path

from logger import logger


_SQL_DIR = Path(__file__).with_name("sql")
SCHEMA_VERSION = 1


async def init_db(path: str) -> aiosqlite.Connection:
    """打开数据库并按 user_version 执行初始化/升级, 连接归调用方所有"""
    db_dir = os.path.dirname(path)
    if db_dir and not os.path.exists(db_dir):
        os.makedirs(db_dir, exist_ok=True)

    conn = await aiosqlite.connect(path)
    try:
        async with conn.execute("PRAGMA user_version") as cursor:
            row = await cursor.fetchone()
            user_version = row[0]

        if user_version == 0:
            init_sql = (_SQL_DIR / "db_init_v1.sql").read_text(encoding="utf-8")
            await conn.executescript(init_sql)
            await conn.execute("PRAGMA user_version = 1")
            logger.info(f"数据库已初始化: {path}")

        # 数据库升级逻辑可以在这里继续添加
        await conn.commit()
    except BaseException:
        await conn.close()
        raise

    return conn


__all__ = ["init_db", "SCHEMA_VERSION"]
