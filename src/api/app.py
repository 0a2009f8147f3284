from __future__ import annotations

import time
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from errors import StoreUnavailableError, UnknownDestinationError, ValidationError
from logger import logger
from metrics import RuntimeMetrics, runtime_metrics
from scheduler.engine import ScheduleEngine

from .schemas import DestinationOut, RuntimeControl, ScheduleOut, ScheduleRequest


def create_app(
    engine: ScheduleEngine,
    control: RuntimeControl,
    metrics: RuntimeMetrics | None = None,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    app = FastAPI(title="Notepush API", version="1.0.0")
    metrics = metrics or runtime_metrics

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ValidationError)
    async def _on_validation_error(request: Request, exc: ValidationError) -> JSONResponse:
        logger.info(f"拒绝请求 {request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(UnknownDestinationError)
    async def _on_unknown_destination(request: Request, exc: UnknownDestinationError) -> JSONResponse:
        logger.info(f"拒绝请求 {request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(StoreUnavailableError)
    async def _on_store_unavailable(request: Request, exc: StoreUnavailableError) -> JSONResponse:
        logger.error(f"数据库不可用, 请求 {request.method} {request.url.path} 失败: {exc}")
        return JSONResponse(status_code=503, content={"error": "数据库暂不可用, 请稍后重试"})

    @app.exception_handler(Exception)
    async def _on_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.opt(exception=exc).error(f"处理请求 {request.method} {request.url.path} 时出现未预期的异常")
        return JSONResponse(status_code=500, content={"error": "服务器内部错误"})

    def health_payload() -> dict[str, Any]:
        return {
            "status": "ok",
            "now_utc": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "uptime_seconds": max(0.0, time.time() - control.started_at),
            "shutdown_requested": control.shutdown_event.is_set(),
            "scheduler": engine.get_status(),
        }

    @app.get("/healthz", include_in_schema=False)
    async def healthz() -> PlainTextResponse:
        return PlainTextResponse("ok")

    @app.get("/health", include_in_schema=False)
    async def health() -> dict[str, Any]:
        return health_payload()

    @app.get("/api/v1/metrics")
    async def get_metrics() -> dict[str, Any]:
        return {
            "runtime": metrics.snapshot(),
            "scheduler": engine.get_status(),
        }

    @app.get("/destinations", response_model=list[DestinationOut])
    async def list_destinations() -> list[dict[str, str]]:
        return engine.list_destinations()

    @app.get("/schedules/history", response_model=list[ScheduleOut])
    async def get_history() -> list[dict[str, Any]]:
        return [record.to_wire() for record in await engine.history()]

    @app.post("/schedule")
    async def post_schedule(payload: ScheduleRequest) -> dict[str, Any]:
        logger.debug(f"收到 /schedule 请求: {payload.model_dump(by_alias=True)}")
        record = await engine.submit(
            payload.id,
            payload.schedule_time,
            payload.destination_id,
            payload.message,
            payload.mention_all,
        )
        return {"success": True, "message": "提醒已接收", "status": record.status.value}

    @app.delete("/schedule/{note_id}")
    async def delete_schedule(note_id: str) -> dict[str, Any]:
        cancelled = await engine.cancel(note_id)
        return {"success": True, "message": "提醒已取消", "cancelled": cancelled}

    return app
