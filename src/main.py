from logger import setup_logging, logger
from config.settings import *
setup_logging(
    log_level=LOG_LEVEL,
    log_file=LOG_FILE,
    console_level=CONSOLE_LOG_LEVEL,
)

import asyncio
import signal

from api.http_server import main_loop as http_main
from config.destinations import load_destinations
from errors import ConfigError, StoreUnavailableError
from events import bus
from metrics import register_metric_handlers, runtime_metrics
from scheduler.dispatcher import WebhookDispatcher
from scheduler.engine import ScheduleEngine
from scheduler.timers import AsyncioTimerRegistry
from storage.schedule import ScheduleStore

shutdown_event = asyncio.Event()

def signal_handler(sig, frame):
    """处理 SIGINT/SIGTERM 信号"""
    logger.info("收到中断信号,正在依次关闭组件...")
    shutdown_event.set()


async def main():
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        destinations = load_destinations(DESTINATIONS_JSON, DESTINATIONS_FILE)
    except ConfigError as e:
        logger.critical(f"目的地配置错误: {e}")
        return

    register_metric_handlers(bus, runtime_metrics)

    store = ScheduleStore(DB_PATH)
    try:
        await store.connect()
    except StoreUnavailableError as e:
        # 数据库恢复后, 存储层会在下一次访问时重新连接
        logger.error(str(e))

    dispatcher = WebhookDispatcher(destinations, timeout_seconds=DISPATCH_TIMEOUT_SECONDS)
    engine = ScheduleEngine(
        store=store,
        registry=AsyncioTimerRegistry(),
        dispatcher=dispatcher,
        destinations=destinations,
        bus=bus,
    )

    try:
        await engine.reconcile()
        await http_main(engine, shutdown_event)
    finally:
        logger.info("关闭 Notepush...")
        engine.shutdown()
        await dispatcher.aclose()

        logger.info("关闭数据库连接...")
        await store.close()
        logger.info("Notepush 已关闭")


if __name__ == "__main__":
    logger.info("启动 Notepush...")
    asyncio.run(main())
