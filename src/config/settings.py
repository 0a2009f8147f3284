import os
from dotenv import load_dotenv
from logger import logger
load_dotenv()

__all__ = [
    "HTTP_HOST", "HTTP_PORT", "CORS_ORIGINS",
    "DB_PATH",
    "LOG_FILE", "LOG_LEVEL", "CONSOLE_LOG_LEVEL",
    "DESTINATIONS_JSON", "DESTINATIONS_FILE",
    "DISPATCH_TIMEOUT_SECONDS",
]


def _parse_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"{name}={raw!r} 非法, 已回退到 {default}")
        return default


def _parse_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"{name}={raw!r} 非法, 已回退到 {default}")
        return default


# Boundary API
HTTP_HOST = os.getenv("NOTEPUSH_HTTP_HOST", "127.0.0.1")
HTTP_PORT = _parse_int("NOTEPUSH_HTTP_PORT", 3001)
CORS_ORIGINS = [o.strip() for o in os.getenv("NOTEPUSH_CORS_ORIGINS", "*").split(",") if o.strip()]

# 存储
DB_PATH = os.getenv("NOTEPUSH_DB_PATH", "data/notepush.db")

# 日志
LOG_FILE = os.getenv("NOTEPUSH_LOG_FILE", "logs/notepush.log")
LOG_LEVEL = os.getenv("NOTEPUSH_LOG_LEVEL", "DEBUG").strip().upper()
CONSOLE_LOG_LEVEL = os.getenv("NOTEPUSH_CONSOLE_LOG_LEVEL", "INFO").strip().upper()

# 目的地(webhook)配置: 优先使用内联 JSON, 否则读取文件
DESTINATIONS_JSON = os.getenv("NOTEPUSH_DESTINATIONS")
DESTINATIONS_FILE = os.getenv("NOTEPUSH_DESTINATIONS_FILE", "config/destinations.json")

# 投递
DISPATCH_TIMEOUT_SECONDS = _parse_float("NOTEPUSH_DISPATCH_TIMEOUT_SECONDS", 10.0)
if DISPATCH_TIMEOUT_SECONDS <= 0:
    logger.warning("NOTEPUSH_DISPATCH_TIMEOUT_SECONDS 必须为正数, 已回退到 10 秒")
    DISPATCH_TIMEOUT_SECONDS = 10.0
