"""
Thread Offload Helpers

Work handed to a thread keeps running after the awaiting task is
cancelled. Coverage runs clear their caches once the run task finishes,
so offloaded work that touches those caches has to finish first.
"""

import asyncio
from typing import Any, Callable


async def to_thread_joined(func: Callable[..., Any], *args: Any) -> Any:
    """
    Like asyncio.to_thread, but a cancelled caller waits for the thread

    On cancellation the CancelledError is re-raised only after func has
    returned, so nothing func writes lands after the caller unwinds.
    """
    worker = asyncio.ensure_future(asyncio.to_thread(func, *args))
    try:
        return await asyncio.shield(worker)
    except asyncio.CancelledError:
        await asyncio.wait([worker])
        raise
