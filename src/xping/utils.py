"""
Small helpers shared by the supervisor and the probe loop.
"""

import asyncio
from datetime import datetime
from typing import Optional


async def sleep_unless_cancelled(delay: float, cancel: Optional[asyncio.Event] = None) -> bool:
    """
    Sleep for ``delay`` seconds, waking early if ``cancel`` is set.

    Returns:
        True if the cancel event is set when the call returns
    """
    if cancel is None:
        await asyncio.sleep(delay)
        return False
    if cancel.is_set():
        return True
    try:
        await asyncio.wait_for(cancel.wait(), timeout=delay)
    except asyncio.TimeoutError:
        pass
    return cancel.is_set()


def clock() -> str:
    """Current wall-clock time as HH:MM:SS."""
    return datetime.now().strftime("%H:%M:%S")
