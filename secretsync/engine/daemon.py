"""
Main daemon entry point: starts all controller subsystems.

Runs as: python -m secretsync.engine.daemon

Subsystems:
- Sync scheduler (APScheduler timers + worker pool)
- Manifest reload loop (directory mtime polling)
- Backend health watchdog
- Health endpoint (FastAPI on port 18900)
"""

from __future__ import annotations

import asyncio
import logging
import sys

from secretsync.config import get_config
from secretsync.engine.config import EngineConfig
from secretsync.engine.controller import SyncController
from secretsync.engine.health import serve_health
from secretsync.engine.models import BackendHealth

logger = logging.getLogger(__name__)


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or get_config().log_level).upper(),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


async def main(config: EngineConfig | None = None) -> None:
    """Start all controller subsystems."""
    configure_logging()
    logger.info("Starting secretsync controller...")

    config = config or EngineConfig.from_env()
    controller = SyncController(config)
    if config.store_backend == "postgres":
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, controller.store.ensure_schema)  # type: ignore[attr-defined]

    summary = await controller.start()
    logger.info(
        "Controller online: %d descriptors, %d backends (%d manifests rejected)",
        len(controller.registry),
        len(controller.backends),
        summary.rejected,
    )

    tasks = [
        asyncio.create_task(controller.scheduler.start(), name="scheduler"),
        asyncio.create_task(controller.reload_loop(), name="reload"),
        asyncio.create_task(serve_health(controller), name="health"),
        asyncio.create_task(_watchdog(controller), name="watchdog"),
    ]

    logger.info("All subsystems started")

    # uvicorn handles SIGTERM/SIGINT and returns, completing the health task;
    # that is the shutdown trigger.
    done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)

    for task in done:
        if task.exception():
            logger.error("Task %s failed: %s", task.get_name(), task.exception())
        else:
            logger.info("Task %s completed", task.get_name())

    logger.info("Shutting down subsystems...")
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)

    await controller.close()
    logger.info("Controller stopped")


async def _watchdog(controller: SyncController) -> None:
    """Backend health watchdog: probes every backend and records transitions."""
    unhealthy_ticks: dict[str, int] = {}

    while True:
        await asyncio.sleep(controller.config.health_check_interval)
        try:
            results = await controller.backends.check_health()
        except Exception as e:
            logger.warning("Watchdog: backend health check failed: %s", e)
            continue

        for key, health in results.items():
            if health == BackendHealth.UNREACHABLE:
                unhealthy_ticks[key] = unhealthy_ticks.get(key, 0) + 1
                if unhealthy_ticks[key] == 3:
                    logger.error("Watchdog: backend %s unreachable for 3 consecutive checks", key)
            else:
                unhealthy_ticks.pop(key, None)


def run() -> None:
    """Entry point for python -m secretsync.engine.daemon"""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
    except Exception as e:
        logger.error("Controller crashed: %s", e, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    run()
