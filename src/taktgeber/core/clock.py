"""
Wall-clock source used by the scheduler

Kept behind a small class so tests can substitute a clock that advances on
sleep instead of waiting in real time.
"""

import asyncio
import time
from datetime import datetime


class Clock:
    """System wall clock with cooperative sleeping"""

    def now_ms(self) -> int:
        """Current time in epoch milliseconds"""
        return int(time.time() * 1000)

    def local_datetime(self, timestamp_ms: int) -> datetime:
        """Timezone-aware local datetime for an epoch millisecond value"""
        return datetime.fromtimestamp(timestamp_ms / 1000).astimezone()

    async def sleep(self, seconds: float) -> None:
        """Suspend the calling task for ``seconds``"""
        await asyncio.sleep(max(seconds, 0))


system_clock = Clock()
