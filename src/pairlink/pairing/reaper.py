"""Expiry of pending connections.

Pending records older than the configured TTL move to `expired` and lose
their PIN, so stale QR codes and PINs stop working. The move is a
conditional update on status, so a guest that connects at the same moment
keeps its connection.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from pairlink.models import CONNECTIONS_TABLE, ConnectionStatus
from pairlink.store.base import Store, format_timestamp, utc_now

logger = logging.getLogger(__name__)


class PendingReaper:
    """Expires pending connections older than a TTL.

    Usage:
        reaper = PendingReaper(store, ttl=600, interval=30)
        await reaper.start()
        ...
        await reaper.stop()
    """

    def __init__(
        self,
        store: Store,
        ttl: float,
        interval: float = 30.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize reaper.

        Args:
            store: Store holding connection records.
            ttl: Seconds a record may stay pending. 0 disables expiry.
            interval: Seconds between sweeps when running periodically.
            clock: Injectable UTC clock (for testing).
        """
        self.store = store
        self.ttl = ttl
        self.interval = interval
        self._clock = clock or utc_now
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def reap(self) -> list[str]:
        """Run one sweep.

        Returns:
            Connection ids that were expired by this sweep.
        """
        if self.ttl <= 0:
            return []

        cutoff = format_timestamp(self._clock() - timedelta(seconds=self.ttl))
        rows = await self.store.select(
            CONNECTIONS_TABLE, {"status": ConnectionStatus.PENDING.value}
        )

        expired = []
        for row in rows:
            created_at = row.get("created_at")
            if created_at is None or created_at >= cutoff:
                continue
            updated = await self.store.update_where(
                CONNECTIONS_TABLE,
                {
                    "connection_id": row["connection_id"],
                    "status": ConnectionStatus.PENDING.value,
                },
                {"status": ConnectionStatus.EXPIRED.value, "pin_code": None},
            )
            if updated is not None:
                expired.append(row["connection_id"])

        if expired:
            logger.info(f"Expired {len(expired)} pending connection(s)")
        return expired

    async def start(self) -> None:
        """Start sweeping periodically."""
        if self._running or self.ttl <= 0:
            return

        self._running = True
        self._task = asyncio.create_task(self._reap_loop())
        logger.info(f"PendingReaper started (ttl={self.ttl}s, interval={self.interval}s)")

    async def stop(self) -> None:
        """Stop sweeping."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("PendingReaper stopped")

    async def _reap_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)
                await self.reap()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Reaper loop error: {e}")
