"""Taskclock entry point."""

import asyncio
import importlib
import logging
import signal

from taskclock.app import SchedulerService
from taskclock.config import settings

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, settings.log_level),
)
logger = logging.getLogger(__name__)


def load_agent_runner(path: str):
    """Import an agent runner given as ``package.module:callable``."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        msg = f"AGENT_RUNNER must look like 'package.module:callable', got {path!r}"
        raise ValueError(msg)
    module = importlib.import_module(module_name)
    runner = getattr(module, attr)
    if not callable(runner):
        msg = f"AGENT_RUNNER {path!r} is not callable"
        raise TypeError(msg)
    return runner


async def _run() -> None:
    service = SchedulerService(load_agent_runner(settings.agent_runner))

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await service.start()
    try:
        await stop_event.wait()
        logger.info("Shutdown requested, draining in-flight runs...")
    finally:
        await service.stop()


def main() -> None:
    """Run the scheduler until interrupted."""
    if not settings.agent_runner:
        logger.error("AGENT_RUNNER is not set, nothing can run scheduled instructions")
        raise SystemExit(1)

    logger.info("Starting taskclock (database=%s)...", settings.database_path)
    asyncio.run(_run())


if __name__ == "__main__":
    main()
