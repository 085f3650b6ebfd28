"""
Time source shared by the pollers, so waits can be simulated in tests.
"""

import asyncio
from datetime import datetime, timezone


class Clock:
    """Wall-clock time and cooperative sleeping."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


def elapsed_seconds(clock: Clock, since: datetime) -> float:
    """Seconds elapsed on clock since the given instant."""
    return (clock.now() - since).total_seconds()
