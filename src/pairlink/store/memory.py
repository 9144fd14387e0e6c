"""In-process store with conditional updates and a change feed."""

import asyncio
import copy
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from pairlink.errors import ConflictError, StoreUnavailableError
from pairlink.store.base import (
    STORE_COLUMNS,
    TABLE_KEYS,
    Change,
    ChangeEvent,
    Row,
    Subscription,
    TimestampSource,
    primary_key,
)

logger = logging.getLogger(__name__)


class MemoryStore:
    """Store holding all tables in memory.

    Every mutation runs under one lock and notifies matching subscriptions
    before the lock is released, so feeds see changes in commit order.
    Subclasses persist state by overriding _commit().
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        """Initialize store.

        Args:
            clock: Injectable UTC clock for created_at (for testing).
        """
        self._tables: dict[str, dict[Any, Row]] = {t: {} for t in TABLE_KEYS}
        self._sequences: dict[str, int] = {t: 0 for t in TABLE_KEYS}
        self._subscriptions: list[Subscription] = []
        self._timestamps = TimestampSource(clock)
        self._lock = asyncio.Lock()
        self._closed = False

    def _check_open(self) -> None:
        if self._closed:
            raise StoreUnavailableError("Store is closed")

    async def _commit(self) -> None:
        """Persist current state. No-op for the in-memory store."""
        pass

    def _notify(self, change: Change) -> None:
        for subscription in list(self._subscriptions):
            if subscription.matches(change):
                subscription.deliver(copy.deepcopy(change))

    async def insert(self, table: str, row: Row) -> Row:
        self._check_open()
        key = primary_key(table)

        async with self._lock:
            rows = self._tables[table]
            new_row = dict(row)

            if key == "id" and new_row.get("id") is None:
                new_row["id"] = self._sequences[table] + 1

            if new_row.get(key) is None:
                raise ValueError(f"Missing primary key: {key}")
            if new_row[key] in rows:
                raise ConflictError(f"Duplicate {key} in {table}")

            new_row["created_at"] = self._timestamps.next()
            rows[new_row[key]] = new_row
            previous_sequence = self._sequences[table]
            if key == "id":
                self._sequences[table] = max(previous_sequence, new_row["id"])

            try:
                await self._commit()
            except StoreUnavailableError:
                del rows[new_row[key]]
                self._sequences[table] = previous_sequence
                raise

            self._notify(Change(ChangeEvent.INSERT, table, new_row))
            return dict(new_row)

    async def update_where(
        self, table: str, match: Row, changes: Row
    ) -> Optional[Row]:
        self._check_open()
        key = primary_key(table)
        if key not in match:
            raise ValueError(f"Conditional update must match on {key}")
        for column in changes:
            if column == key or column in STORE_COLUMNS:
                raise ValueError(f"Column {column} cannot be updated")

        async with self._lock:
            rows = self._tables[table]
            current = rows.get(match[key])
            if current is None:
                return None
            if any(current.get(col) != value for col, value in match.items()):
                return None

            updated = {**current, **changes}
            rows[match[key]] = updated

            try:
                await self._commit()
            except StoreUnavailableError:
                rows[match[key]] = current
                raise

            self._notify(Change(ChangeEvent.UPDATE, table, updated))
            return dict(updated)

    async def select(
        self,
        table: str,
        where: Optional[Row] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> list[Row]:
        self._check_open()
        primary_key(table)
        where = where or {}

        async with self._lock:
            found = [
                dict(row)
                for row in self._tables[table].values()
                if all(row.get(col) == value for col, value in where.items())
            ]

        if order_by is not None:
            # sort() is stable, ties keep insertion order either way
            found.sort(
                key=lambda r: (r.get(order_by) is not None, r.get(order_by) or 0),
                reverse=descending,
            )
        return found

    def subscribe(
        self, table: str, column: Optional[str] = None, value: Any = None
    ) -> Subscription:
        self._check_open()
        primary_key(table)
        return Subscription(
            table,
            column,
            value,
            on_start=self._register,
            on_cancel=self._unregister,
        )

    async def _register(self, subscription: Subscription) -> None:
        self._check_open()
        self._subscriptions.append(subscription)
        logger.debug(
            f"Subscribed to {subscription.table}"
            f" ({len(self._subscriptions)} active)"
        )

    def _unregister(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def close(self) -> None:
        self._closed = True
        for subscription in list(self._subscriptions):
            subscription.cancel()
        self._subscriptions.clear()
