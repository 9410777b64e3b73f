"""
Main entry point for podradio.

Configures logging, loads configuration and runs the station until SIGINT or
SIGTERM.
"""

import asyncio
import logging
import logging.handlers
import signal
import sys
from typing import Optional

from podradio.app.config import RadioConfig
from podradio.app.station import Station
from podradio.errors import ConfigurationError

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _add_file_handler(path: str) -> None:
    # WatchedFileHandler for rotation tolerance
    try:
        handler = logging.handlers.WatchedFileHandler(path, mode='a')
    except OSError as e:
        logger.warning(f"[STATION] Cannot open log file {path}: {e}")
        return
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    original_emit = handler.emit

    def safe_emit(record):
        try:
            original_emit(record)
        except (IOError, OSError):
            # Logging failures degrade silently
            pass
    handler.emit = safe_emit
    logging.getLogger().addHandler(handler)


async def _serve(station: Station) -> int:
    loop = asyncio.get_running_loop()

    def on_signal(sig):
        logger.info(f"[STATION] Received {sig.name} signal - initiating graceful shutdown")
        station.request_shutdown()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, on_signal, sig)

    return await station.run()


def main(args: Optional[list] = None) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format=LOG_FORMAT,
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)

    try:
        config = RadioConfig.load_config()
    except (ConfigurationError, ValueError) as e:
        logger.error(f"[STATION] Configuration error: {e}")
        sys.exit(1)

    logging.getLogger().setLevel(config.log_level)
    if config.log_file:
        _add_file_handler(config.log_file)

    logger.info("=" * 70)
    logger.info("podradio - Starting Station")
    logger.info("=" * 70)

    station = Station(config)
    exit_code = asyncio.run(_serve(station))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
