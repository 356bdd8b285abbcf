"""Bounded awaits for calls that leave the process."""

import asyncio
from typing import Awaitable, TypeVar

from src.domain.errors import UnavailableError

T = TypeVar("T")


async def bounded(awaitable: Awaitable[T], timeout: float, what: str) -> T:
    """Await *awaitable* for at most *timeout* seconds.

    A timeout surfaces as ``UnavailableError`` naming *what* was slow.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise UnavailableError(f"{what} timed out") from exc
