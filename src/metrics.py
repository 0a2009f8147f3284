"""
运行时指标收集, 统计提醒的提交/取消/投递结果和投递耗时, 通过 /api/v1/metrics 暴露。
"""

from __future__ import annotations

import time
from dataclasses import dataclass

from events import Bus, E


@dataclass
class RuntimeMetrics:
    submitted_count: int = 0
    cancelled_count: int = 0
    sent_count: int = 0
    failed_count: int = 0
    dispatch_count: int = 0
    dispatch_total_latency_ms: float = 0.0
    last_fire_at: float | None = None

    def record_submitted(self) -> None:
        self.submitted_count += 1

    def record_cancelled(self) -> None:
        self.cancelled_count += 1

    def record_dispatch(self, latency_ms: float | None, ok: bool) -> None:
        if ok:
            self.sent_count += 1
        else:
            self.failed_count += 1
        if latency_ms is not None:
            self.dispatch_count += 1
            self.dispatch_total_latency_ms += max(0.0, latency_ms)
            self.last_fire_at = time.time()

    def snapshot(self) -> dict:
        avg_latency_ms = 0.0
        if self.dispatch_count > 0:
            avg_latency_ms = self.dispatch_total_latency_ms / self.dispatch_count

        return {
            "submitted_count": self.submitted_count,
            "cancelled_count": self.cancelled_count,
            "sent_count": self.sent_count,
            "failed_count": self.failed_count,
            "dispatch_count": self.dispatch_count,
            "dispatch_avg_latency_ms": round(avg_latency_ms, 2),
            "last_fire_at_epoch": self.last_fire_at,
            "last_fire_at_utc": (
                time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.last_fire_at))
                if self.last_fire_at is not None
                else None
            ),
        }


def register_metric_handlers(bus: Bus, metrics: RuntimeMetrics) -> None:
    @bus.on(E.SCHEDULE_SUBMITTED)
    def _on_submitted(**_: object) -> None:
        metrics.record_submitted()

    @bus.on(E.SCHEDULE_CANCELLED)
    def _on_cancelled(**_: object) -> None:
        metrics.record_cancelled()

    @bus.on(E.SCHEDULE_SENT)
    def _on_sent(latency_ms: float | None = None, **_: object) -> None:
        metrics.record_dispatch(latency_ms, ok=True)

    @bus.on(E.SCHEDULE_FAILED)
    def _on_failed(latency_ms: float | None = None, **_: object) -> None:
        metrics.record_dispatch(latency_ms, ok=False)


runtime_metrics = RuntimeMetrics()


__all__ = ["RuntimeMetrics", "runtime_metrics", "register_metric_handlers"]
