"""
Background Dispatch Sweeper
===========================

Runs every ``sweep_interval_seconds`` (default 15 s).

Concurrency safety
------------------
* **Redis distributed lock** ensures only one API process runs a cycle
  at a time.
* Everything the cycle does goes through the Matching Engine, whose
  transitions are compare-and-swap; a ride raced by a live round is
  moved at most once.

Per cycle
---------
1. Dispatch scheduled rides whose ``scheduled_for`` has arrived and that
   were never dispatched.
2. Expire REQUESTED rides whose last dispatch is older than the round
   window plus ``sweep_grace_seconds`` (rounds orphaned by a restart),
   and immediate rides that old which were never dispatched at all.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from src.domain.errors import DispatchError
from src.infrastructure.locks import DistributedLock
from src.infrastructure.repositories import RideRepository
from src.services.container import Services

logger = logging.getLogger(__name__)

LOCK_KEY = "dispatch_sweeper"

_task: Optional[asyncio.Task] = None
_stop_event: Optional[asyncio.Event] = None


# ── Public API ────────────────────────────────────────────────────────


async def start_sweeper(services: Services) -> None:
    global _task, _stop_event
    _stop_event = asyncio.Event()
    _task = asyncio.create_task(_loop(services, _stop_event))
    logger.info(
        "Sweeper started (interval=%ds)", services.config.sweep_interval_seconds
    )


async def stop_sweeper() -> None:
    global _task, _stop_event
    if _stop_event:
        _stop_event.set()
    if _task:
        _task.cancel()
        try:
            await _task
        except asyncio.CancelledError:
            pass
    _task, _stop_event = None, None
    logger.info("Sweeper stopped")


# ── Internals ─────────────────────────────────────────────────────────


async def _loop(services: Services, stop_event: asyncio.Event) -> None:
    """Periodic loop: run a sweep cycle then sleep."""
    while not stop_event.is_set():
        try:
            await run_sweep_cycle(services)
        except Exception:
            logger.exception("Unhandled error in sweep cycle")
        try:
            await asyncio.wait_for(
                stop_event.wait(), timeout=services.config.sweep_interval_seconds
            )
            break
        except asyncio.TimeoutError:
            pass  # next cycle


async def run_sweep_cycle(
    services: Services, now: Optional[datetime] = None
) -> tuple[int, int]:
    """Execute one cycle.  Returns (rides dispatched, rides expired)."""
    config = services.config
    lock = DistributedLock(
        services.redis, LOCK_KEY, ttl_seconds=max(30, config.sweep_interval_seconds * 2)
    )
    if not await lock.acquire():
        logger.debug("Lock held by another worker – skipping cycle")
        return 0, 0

    now = now or datetime.now(timezone.utc)
    stale_before = now - timedelta(
        seconds=config.match_timeout_seconds + config.sweep_grace_seconds
    )
    dispatched = expired = 0
    try:
        due = await services.store.run(
            lambda s: RideRepository(s).get_due_scheduled(now)
        )
        for ride in due:
            try:
                await services.engine.dispatch(ride)
                dispatched += 1
            except DispatchError as exc:
                logger.warning("Scheduled ride %s not dispatched: %s", ride.id, exc)

        stale = await services.store.run(
            lambda s: RideRepository(s).get_stale_requested(stale_before)
        )
        for ride_id in stale:
            try:
                if await services.engine.expire(ride_id):
                    expired += 1
            except DispatchError as exc:
                logger.warning("Orphaned ride %s not expired: %s", ride_id, exc)

        if dispatched or expired:
            logger.info(
                "Sweep cycle: %d scheduled rides dispatched, %d orphaned rounds expired",
                dispatched,
                expired,
            )
    finally:
        await lock.release()

    return dispatched, expired
