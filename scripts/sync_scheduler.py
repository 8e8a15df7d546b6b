from __future__ import annotations

import asyncio
import logging
import signal

from syncwarden.core.logging import configure_logging
from syncwarden.services.plugins import ensure_plugins_loaded
from syncwarden.services.scheduling.lifecycle import get_sync_scheduler


logger = logging.getLogger(__name__)


async def _main() -> None:
    # Dedicated scheduler process: one worker per enabled provider until SIGINT/SIGTERM.
    configure_logging()
    ensure_plugins_loaded()
    scheduler = get_sync_scheduler()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    await scheduler.start()
    try:
        await stop.wait()
    finally:
        await scheduler.stop()


if __name__ == "__main__":
    asyncio.run(_main())
