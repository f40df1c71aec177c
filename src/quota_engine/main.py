"""Main entry point for the standalone reset sweeper."""

import asyncio
import logging
import signal
import sys
from typing import NoReturn

from quota_engine.config import Settings, get_settings
from quota_engine.engine import QuotaEngine
from quota_engine.errors import InvalidConfiguration
from quota_engine.policy import EnforcementPolicy

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )


class SweeperDaemon:
    """Runs the periodic quota reset sweep until told to stop."""

    def __init__(self, settings: Settings, policy: EnforcementPolicy | None = None) -> None:
        self.settings = settings
        self.engine = QuotaEngine.from_settings(settings, policy)
        self._stop = asyncio.Event()

    def request_stop(self, signum: int | None = None) -> None:
        if signum is not None:
            logger.info(f"Received signal {signum}")
        self._stop.set()

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop, sig)
            except NotImplementedError:
                # Windows event loops have no signal handlers; Ctrl+C still interrupts
                pass

        await self.engine.start(run_sweeper=True)
        logger.info("Quota reset sweeper running. Press Ctrl+C to stop.")
        try:
            await self._stop.wait()
        finally:
            await self.engine.stop()


def main() -> NoReturn:
    """Main entry point."""
    settings = get_settings()
    configure_logging(settings.log_level)

    try:
        daemon = SweeperDaemon(settings)
    except (InvalidConfiguration, ValueError) as e:
        logger.error(f"Cannot start sweeper: {e}")
        sys.exit(2)

    try:
        asyncio.run(daemon.run())
    except KeyboardInterrupt:
        pass
    logger.info("Quota reset sweeper stopped")
    sys.exit(0)


if __name__ == "__main__":
    main()
