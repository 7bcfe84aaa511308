"""Fixed inter-request spacing for one source run."""

import asyncio

import structlog

logger = structlog.get_logger()


class Throttle:
    """Minimum delay between consecutive calls to a source.

    Not a token bucket: upstream sources document a simple minimum interval.
    One instance per orchestration run; awaiting it suspends only that run.
    """

    def __init__(self, interval_ms: int = 1000):
        self.interval_ms = interval_ms
        self.delays = 0

    async def delay(self, milliseconds: int | None = None) -> None:
        """Pause for milliseconds (default: the configured interval)."""
        ms = self.interval_ms if milliseconds is None else milliseconds
        self.delays += 1
        if ms <= 0:
            return
        logger.debug("throttle_delay", milliseconds=ms)
        await asyncio.sleep(ms / 1000)
