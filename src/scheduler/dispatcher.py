"""投递器: 把提醒内容一次性 POST 到目的地的 webhook

只发一次, 不重试。未知目的地不会发起任何网络请求。
"""

from __future__ import annotations

import httpx

from config.destinations import DestinationTable
from errors import TransportFailureError, UnresolvedDestinationError
from logger import logger

__all__ = ["WebhookDispatcher"]


class WebhookDispatcher:
    def __init__(
        self,
        destinations: DestinationTable,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.destinations = destinations
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def send(self, destination_id: str, message: str, mention_all: bool = False) -> None:
        """投递成功时正常返回, 失败时抛出 DeliveryError 的子类"""
        destination = self.destinations.get(destination_id)
        if destination is None:
            raise UnresolvedDestinationError(destination_id)

        payload = {"text": destination.render(message, mention_all)}
        try:
            response = await self._client.post(
                destination.url,
                json=payload,
                headers={"Content-Type": "application/json; charset=UTF-8"},
            )
        except httpx.HTTPError as e:
            raise TransportFailureError(f"发送到 {destination_id} 时网络错误: {e!r}") from e

        if not response.is_success:
            raise TransportFailureError(
                f"{destination_id} 返回非成功状态 {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        logger.debug(f"webhook 已接受消息: destination={destination_id}, status={response.status_code}")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
