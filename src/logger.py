"""日志配置

启动时调用一次 setup_logging, 各模块直接 `from logger import logger`。
未配置时沿用 loguru 默认的 stderr 输出(测试场景)。

输出三路: 彩色控制台、按大小轮转的主日志、只收 ERROR 以上的 *_error 日志。
"""

import sys
from pathlib import Path

from loguru import logger

_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{function}:{line} - {message}"


def _level(name: str) -> str:
    name = name.strip().upper()
    return "CRITICAL" if name == "FATAL" else name


def setup_logging(log_level: str, log_file: str | Path, console_level: str = "INFO") -> None:
    main_file = Path(log_file)
    main_file.parent.mkdir(parents=True, exist_ok=True)
    error_file = main_file.with_name(f"{main_file.stem}_error{main_file.suffix}")

    files = [(main_file, _level(log_level), "30 days"), (error_file, "ERROR", "90 days")]
    logger.configure(handlers=[
        {
            "sink": sys.stderr,
            "level": _level(console_level),
            "format": "<green>{time:HH:mm:ss}</green> | <level>{level:<8}</level> | "
                      "<cyan>{name}:{line}</cyan> - <level>{message}</level>",
        },
        *(
            {
                "sink": path,
                "level": level,
                "format": _FORMAT,
                "rotation": "10 MB",
                "retention": retention,
                "compression": "zip",
                "encoding": "utf-8",
                # 定时器回调与 HTTP 处理并发写文件
                "enqueue": True,
            }
            for path, level, retention in files
        ),
    ])


__all__ = ["setup_logging", "logger"]
