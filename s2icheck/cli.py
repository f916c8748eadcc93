"""Command-line entrypoint.

Takes no flags; everything is read from the environment (see
:meth:`s2icheck.config.VerifyConfig.from_env`). Exits with the first
non-zero code of the run, 0 on success.
"""

import asyncio
import logging
import os
import signal
import sys
from typing import Optional

from docker.errors import DockerException

from s2icheck.config import VerifyConfig
from s2icheck.container_tracker import ContainerTracker
from s2icheck.orchestrator import Orchestrator

logger = logging.getLogger(__name__)


async def verify(config: VerifyConfig, tracker: ContainerTracker) -> int:
    """Run the verification, cancelling it cleanly on SIGINT/SIGTERM."""
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()

    interrupted = False

    def handle_signal(sig):
        nonlocal interrupted
        if interrupted:
            logger.warning(f"Received signal {sig.name} again, still cleaning up")
            return
        interrupted = True
        logger.info(f"Received signal {sig.name}, shutting down...")
        task.cancel()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)
    try:
        report = await Orchestrator(config, tracker=tracker).run()
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)
    return report.exit_code


def parse_log_level(name: str) -> Optional[int]:
    """Numeric logging level for ``name``, or None if it is not a level name."""
    level = logging.getLevelName(name.strip().upper())
    return level if isinstance(level, int) else None


def main() -> int:
    level_name = os.getenv("LOG_LEVEL", "INFO")
    level = parse_log_level(level_name)
    logging.basicConfig(
        level=logging.INFO if level is None else level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if level is None:
        logger.warning(f"Unknown LOG_LEVEL {level_name!r}, using INFO")
    try:
        config = VerifyConfig.from_env()
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    try:
        tracker = ContainerTracker()
    except DockerException as e:
        logger.error(f"Cannot connect to the Docker daemon: {e}")
        return 1

    logger.info(f"Verifying S2I image {config.image_name}")
    try:
        return asyncio.run(verify(config, tracker))
    finally:
        tracker.close()


if __name__ == "__main__":
    sys.exit(main())
