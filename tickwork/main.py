"""tickwork entry point — run the scheduler until interrupted."""

import asyncio
import contextlib
import logging
import signal

from tickwork.config import settings

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, settings.log_level),
)
logger = logging.getLogger(__name__)


async def run() -> None:
    """Build and start the engine, then block until SIGINT or SIGTERM."""
    from tickwork.app import build_scheduler, close_scheduler, register_demo_tasks

    engine = await build_scheduler()
    if settings.demo_tasks:
        await register_demo_tasks(engine)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on Windows event loops
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    await engine.start()
    logger.info("tickwork running with %d task(s)", len(engine.get_tasks()))
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down...")
        await close_scheduler(engine)


def main() -> None:
    """Run the scheduler on a fresh event loop."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
