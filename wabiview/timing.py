"""Clock and sleep helpers shared by the background loops."""

import asyncio
from datetime import datetime, timezone


def utc_now() -> datetime:
    """Current UTC time as a naive datetime (SQLite keeps no zone info)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


async def wait_or_stop(stop_event: asyncio.Event, seconds: float) -> bool:
    """
    Sleep for up to ``seconds``, waking early if ``stop_event`` is set.

    Returns:
        True if the stop event fired, False if the full delay elapsed.
    """
    if stop_event.is_set():
        return True
    if seconds <= 0:
        return False
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        return True
    except asyncio.TimeoutError:
        return False
