from datetime import datetime, timezone

__all__ = ["now_utc", "parse_schedule_time", "to_utc_iso", "from_utc_iso"]


def now_utc() -> datetime:
    """获取当前 UTC 时间"""
    return datetime.now(timezone.utc)


def parse_schedule_time(raw: str | datetime) -> datetime:
    """解析 ISO-8601 时间(兼容末尾的 'Z'), 无时区信息时按 UTC 处理"""
    if isinstance(raw, datetime):
        dt = raw
    else:
        text = str(raw).strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_utc_iso(dt: datetime) -> str:
    # 固定到毫秒精度, 保证数据库里按文本排序即按时间排序
    return parse_schedule_time(dt).isoformat(timespec="milliseconds")


def from_utc_iso(text: str) -> datetime:
    return parse_schedule_time(text)
