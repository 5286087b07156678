"""
MTF Sentinel Trader - Main Entry Point
Runs the cron API server and the position monitoring loop on one event loop.

The daily scan is triggered externally (POST /api/cron/daily-scan). Position
monitoring runs every MONITOR_INTERVAL_MINUTES while the NSE session is open.
The API and the loop share one Services instance, so the per-position locks
serialise exits from both.
"""

import asyncio
import logging
import sys

import uvicorn

from config import Config
from api.cron_api import Services, create_app
from executors.lemon_broker import is_market_open


def configure_logging() -> None:
    """Log to stdout and to a file under LOG_PATH."""
    Config.LOG_PATH.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(Config.LOG_PATH / "mtf_sentinel.log"),
        ],
    )


logger = logging.getLogger(__name__)


def build_server(app, host: str, port: int) -> uvicorn.Server:
    """API server to run inside the current event loop."""
    config = uvicorn.Config(app, host=host, port=port, log_level="warning", access_log=False)
    return uvicorn.Server(config)


async def monitor_loop(services: Services) -> None:
    interval = Config.MONITOR_INTERVAL_MINUTES * 60
    while True:
        if is_market_open():
            try:
                report = await services.monitor.run_cycle()
                logger.info(
                    f"Monitor: {report.total_positions} positions, "
                    f"{report.exits_completed} exits, {report.level_changes} level changes"
                )
            except Exception as e:
                logger.exception(f"Monitor cycle failed: {e}")
                services.db.log_error("monitor_loop_error", "main", str(e))
        else:
            logger.debug("Market closed, skipping monitor cycle")
        await asyncio.sleep(interval)


async def main():
    """Main entry point."""
    configure_logging()
    logger.info("=" * 60)
    logger.info("MTF SENTINEL TRADER v1.0.0")
    logger.info(f"Mode: {Config.MODE}")
    logger.info("=" * 60)
    Config.print_config()

    validation = Config.validate()
    for issue in validation["issues"]:
        logger.warning(f"Config: {issue}")

    services = Services.build()
    server = build_server(create_app(services), Config.API_HOST, Config.API_PORT)
    logger.info(f"Cron API available at http://{Config.API_HOST}:{Config.API_PORT}")

    monitor_task = asyncio.create_task(monitor_loop(services))
    try:
        await server.serve()
    finally:
        logger.info("Shutdown requested...")
        monitor_task.cancel()


if __name__ == "__main__":
    asyncio.run(main())
