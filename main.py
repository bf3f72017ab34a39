"""Run the scheduler worker until interrupted."""

import asyncio
import logging
import signal

from core.config import Settings
from core.logging_config import setup_logging
from runtime import build_runtime

logger = logging.getLogger(__name__)


async def serve(settings: Settings) -> None:
    """Start the worker and block until SIGINT/SIGTERM."""
    runtime = await build_runtime(settings)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:  # Windows
            pass

    await runtime.worker.start()
    logger.info("Scheduler running", extra={"database_url": settings.DATABASE_URL})
    try:
        await stop.wait()
    finally:
        await runtime.close()


def main() -> None:
    settings = Settings()
    setup_logging(settings.LOG_LEVEL, json_output=settings.LOG_JSON)
    asyncio.run(serve(settings))


if __name__ == "__main__":
    main()
