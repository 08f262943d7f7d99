"""
Background Offer Expiry Sweeper
===============================

Runs every ``SWEEPER_INTERVAL_SECONDS`` (default 5 s) when
``SWEEPER_ENABLED`` is set.

Concurrency safety
------------------
* **Redis distributed lock** ensures only one API process sweeps at a time.
* Each overdue offer is closed with a guarded update, so a captain answering
  at the same moment and the sweeper can never both win.

Lazy expiry on reads and on the next match attempt stays authoritative; the
sweeper only frees captains (and re-opens rides) sooner.
"""

from __future__ import annotations

import asyncio
import logging

from src.config import settings
from src.infrastructure.database import async_session_factory
from src.infrastructure.locks import DistributedLock
from src.infrastructure.redis_client import get_redis
from src.services.offers import OfferLifecycleManager

logger = logging.getLogger(__name__)

_task: asyncio.Task | None = None
_stop_event: asyncio.Event | None = None


# ── Public API ────────────────────────────────────────────────────────


async def start_sweeper() -> None:
    global _task, _stop_event
    _stop_event = asyncio.Event()
    _task = asyncio.create_task(_loop())
    logger.info(
        "Offer sweeper started (interval=%ds)", settings.sweeper_interval_seconds
    )


async def stop_sweeper() -> None:
    if _stop_event:
        _stop_event.set()
    if _task:
        _task.cancel()
        try:
            await _task
        except asyncio.CancelledError:
            pass
    logger.info("Offer sweeper stopped")


# ── Internals ─────────────────────────────────────────────────────────


async def _loop() -> None:
    assert _stop_event is not None
    while not _stop_event.is_set():
        try:
            await run_sweep()
        except Exception:
            logger.exception("Unhandled error in offer sweep")
        try:
            await asyncio.wait_for(
                _stop_event.wait(), timeout=settings.sweeper_interval_seconds
            )
            break
        except asyncio.TimeoutError:
            pass


async def run_sweep(session_factory=async_session_factory) -> int:
    """Expire every overdue pending offer.  Returns how many were expired."""
    redis = await get_redis()
    lock = DistributedLock(
        redis, "offer_sweeper", ttl_seconds=settings.sweeper_lock_ttl_seconds
    )

    if not await lock.acquire():
        logger.debug("Sweeper lock held by another process; skipping")
        return 0

    try:
        async with session_factory() as session:
            return await OfferLifecycleManager(session).expire_overdue()
    finally:
        await lock.release()
