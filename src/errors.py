"""异常定义

提交阶段的错误(校验/未知目的地/存储不可用)同步返回给调用方;
投递阶段的错误(DeliveryError)只在定时器回调内部出现, 最终落库为 FAILED。
"""

__all__ = [
    "NotepushError",
    "ConfigError",
    "ValidationError", "MissingFieldsError",
    "UnknownDestinationError",
    "StoreUnavailableError",
    "DeliveryError", "UnresolvedDestinationError", "TransportFailureError",
]


class NotepushError(Exception):
    pass


class ConfigError(NotepushError):
    """目的地配置格式错误"""


class ValidationError(NotepushError):
    """提交的字段缺失或非法, 尚未触碰存储与定时器"""


class MissingFieldsError(ValidationError):
    def __init__(self, fields: list[str]) -> None:
        self.fields = fields
        super().__init__(f"请求缺少字段: {', '.join(fields)}")


class UnknownDestinationError(NotepushError):
    def __init__(self, destination_id: str) -> None:
        self.destination_id = destination_id
        super().__init__(f"目的地 '{destination_id}' 未在服务器配置中找到")


class StoreUnavailableError(NotepushError):
    """数据库不可用, 操作被中止"""


class DeliveryError(NotepushError):
    reason = "delivery_error"


class UnresolvedDestinationError(DeliveryError):
    reason = "unknown_destination"

    def __init__(self, destination_id: str) -> None:
        self.destination_id = destination_id
        super().__init__(f"投递时无法解析目的地 '{destination_id}'")


class TransportFailureError(DeliveryError):
    reason = "transport_failure"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)
