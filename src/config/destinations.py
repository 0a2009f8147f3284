"""目的地注册表

进程启动时加载一次, 之后只读。格式为有序 JSON 对象:

    {
        "Notificações": "https://chat.googleapis.com/v1/spaces/.../messages?key=...",
        "Equipa": {"url": "https://...", "name": "Equipa de Suporte", "mention": "<users/all>"}
    }
"""

from __future__ import annotations

import json
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterator, Mapping

from datamodel import Destination
from errors import ConfigError
from logger import logger

__all__ = ["DestinationTable", "load_destinations", "parse_destinations"]


class DestinationTable:
    """不可变的目的地快照, 按配置顺序保存"""

    def __init__(self, destinations: list[Destination] | None = None) -> None:
        table: dict[str, Destination] = {}
        for dest in destinations or []:
            if dest.id in table:
                raise ConfigError(f"目的地 ID 重复: {dest.id}")
            table[dest.id] = dest
        self._table: Mapping[str, Destination] = MappingProxyType(table)

    def get(self, destination_id: str) -> Destination | None:
        return self._table.get(destination_id)

    def __contains__(self, destination_id: object) -> bool:
        return destination_id in self._table

    def __iter__(self) -> Iterator[Destination]:
        return iter(self._table.values())

    def __len__(self) -> int:
        return len(self._table)

    def listing(self) -> list[dict[str, str]]:
        return [{"id": d.id, "name": d.name} for d in self._table.values()]


def _parse_entry(dest_id: str, entry: Any) -> Destination:
    if isinstance(entry, str):
        entry = {"url": entry}
    if not isinstance(entry, dict):
        raise ConfigError(f"目的地 '{dest_id}' 的配置必须是 URL 字符串或对象")

    url = str(entry.get("url") or "").strip()
    if not url.startswith(("http://", "https://")):
        raise ConfigError(f"目的地 '{dest_id}' 缺少合法的 http(s) URL")

    kwargs: dict[str, str] = {"id": dest_id, "name": str(entry.get("name") or dest_id), "url": url}
    if entry.get("mention"):
        kwargs["mention"] = str(entry["mention"])
    return Destination(**kwargs)


def parse_destinations(raw: str | Mapping[str, Any]) -> DestinationTable:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigError(f"目的地配置不是合法 JSON: {e}") from e
    if not isinstance(raw, Mapping):
        raise ConfigError("目的地配置必须是 JSON 对象")
    return DestinationTable([_parse_entry(str(k), v) for k, v in raw.items()])


def load_destinations(inline_json: str | None, file_path: str | Path | None) -> DestinationTable:
    """优先使用内联 JSON, 其次读取配置文件; 都没有时返回空表"""
    if inline_json:
        table = parse_destinations(inline_json)
        source = "环境变量"
    elif file_path and Path(file_path).exists():
        table = parse_destinations(Path(file_path).read_text(encoding="utf-8"))
        source = str(file_path)
    else:
        table = DestinationTable()
        source = None

    if len(table) == 0:
        logger.warning("未配置任何目的地, 所有提醒提交都将被拒绝")
    else:
        logger.info(f"已从 {source} 加载 {len(table)} 个目的地: {', '.join(d.id for d in table)}")
    return table
