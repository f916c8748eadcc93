"""Fixed-interval polling for asynchronous readiness."""

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Union

from s2icheck.models import ReadinessTimeout

logger = logging.getLogger(__name__)

Predicate = Callable[[], Union[bool, Awaitable[bool]]]


async def poll(
    predicate: Predicate,
    max_attempts: int = 10,
    interval: float = 1.0,
    description: str = "condition",
) -> int:
    """Call ``predicate`` until it returns true.

    Sleeps ``interval`` seconds between attempts and never after the last
    one, so the total wait stays under ``max_attempts * interval``.

    Returns:
        The 1-based attempt on which the predicate first held.

    Raises:
        ReadinessTimeout: if every attempt failed.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(1, max_attempts + 1):
        result = predicate()
        if inspect.isawaitable(result):
            result = await result
        if result:
            return attempt
        if attempt < max_attempts:
            logger.info(f"Waiting for {description} (attempt {attempt}/{max_attempts})...")
            await asyncio.sleep(interval)

    raise ReadinessTimeout(
        f"{description} not ready after {max_attempts} attempts "
        f"({interval}s apart)"
    )
