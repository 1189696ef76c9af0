"""
Entry point: supervise tenant bot connections and fire scheduled posts.

Usage::

    python run.py
"""

import asyncio
import logging
import signal
import sys

from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("run")


async def main() -> None:
    from postify.config import get_settings, validate_env
    from postify.connections.telegram_transport import TelegramTransport
    from postify.database import get_db
    from postify.logging import LogLevel, init_logger
    from postify.service import PostifyService
    from postify.vault import CredentialVault

    validate_env()
    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level.upper())

    db = await get_db()
    init_logger(
        log_dir=settings.log_dir,
        supabase_client=db,
        min_level=LogLevel[settings.log_level.upper()],
    )

    service = PostifyService(
        credentials=db,
        content=db,
        jobs=db,
        vault=CredentialVault.from_env(),
        transport=TelegramTransport(),
        settings=settings,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows: fall back to KeyboardInterrupt
            pass

    await service.start()
    logger.info("Postify running. Press Ctrl+C to stop.")
    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down...")
        await service.stop()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(0)
