"""
Run the relay until SIGINT/SIGTERM.

    python -m chat_relay

Configuration comes from the environment (and .env). Without a session
provider plugged in, the process relays inbound messages into the store and
runs the dead-letter sweep, but does not consume send commands.
"""

import asyncio
import signal

from chat_relay.config.settings import get_settings
from chat_relay.core.logging import get_logger, setup_logging
from chat_relay.runtime import RelayRuntime

logger = get_logger(__name__)


async def run() -> None:
    settings = get_settings()
    setup_logging(log_level=settings.logging.LOG_LEVEL, log_format=settings.logging.LOG_FORMAT)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    runtime = RelayRuntime(settings)
    try:
        await runtime.start()
        await stop_event.wait()
        logger.info("Shutdown signal received", stage="MAIN")
    finally:
        await runtime.stop()


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
