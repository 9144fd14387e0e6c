"""Store protocol and change-feed subscriptions.

The pairing core is written against four store primitives:
- primary-key-constrained insert
- conditional update (compare-and-swap on the current row)
- equality queries with ordering
- a live change feed filtered by table and one column value

Any backend providing these can carry pairing and content delivery.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import (
    Any,
    Awaitable,
    Callable,
    Optional,
    Protocol,
)

from pairlink.errors import NotFoundError, PairlinkError
from pairlink.models import CONNECTIONS_TABLE, CONTENT_TABLE

Row = dict[str, Any]

# Primary key column per table
TABLE_KEYS: dict[str, str] = {
    CONNECTIONS_TABLE: "connection_id",
    CONTENT_TABLE: "id",
}

# Columns the store owns; callers cannot change them after insert
STORE_COLUMNS = ("created_at",)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


class ChangeEvent:
    INSERT = "INSERT"
    UPDATE = "UPDATE"


class SubscriptionClosedError(PairlinkError):
    """Read from a subscription that has been cancelled."""

    pass


def primary_key(table: str) -> str:
    """Get the primary key column for a table.

    Raises:
        NotFoundError: If the table is unknown.
    """
    try:
        return TABLE_KEYS[table]
    except KeyError:
        raise NotFoundError(f"Unknown table: {table}") from None


def format_timestamp(dt: datetime) -> str:
    """Format a datetime as a fixed-width UTC ISO string.

    Fixed width keeps lexicographic order equal to chronological order.
    """
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime(TIMESTAMP_FORMAT)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TimestampSource:
    """Issues non-decreasing created_at values.

    If the clock steps backwards the last issued value is repeated.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or utc_now
        self.last: Optional[str] = None

    def next(self) -> str:
        value = format_timestamp(self._clock())
        if self.last is not None and value < self.last:
            value = self.last
        self.last = value
        return value


@dataclass(frozen=True)
class Change:
    """A committed row change delivered on a live feed."""

    event: str
    table: str
    row: Row

    def to_dict(self) -> dict[str, Any]:
        return {"event": self.event, "table": self.table, "row": self.row}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Change":
        return cls(event=d["event"], table=d["table"], row=d["row"])


_CLOSED = object()


class BaseSubscription:
    """Shared behaviour of live feed handles.

    Subclasses provide start(), cancel(), cancelled and get().
    """

    cancelled: bool

    async def start(self) -> "BaseSubscription":
        raise NotImplementedError

    def cancel(self) -> None:
        raise NotImplementedError

    async def get(self) -> Any:
        raise NotImplementedError

    def __aiter__(self) -> "BaseSubscription":
        return self

    async def __anext__(self) -> Any:
        try:
            return await self.get()
        except SubscriptionClosedError:
            raise StopAsyncIteration from None

    async def __aenter__(self) -> "BaseSubscription":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.cancel()


class Subscription(BaseSubscription):
    """Live feed of store changes for one table.

    Created unstarted by Store.subscribe(). Events committed after start()
    are queued in commit order until read. cancel() stops delivery, ends
    iteration and lets the store drop the handle.

    Attributes:
        table: Table being watched.
        column: Optional column for the equality filter.
        value: Value the column must equal.
    """

    def __init__(
        self,
        table: str,
        column: Optional[str] = None,
        value: Any = None,
        on_start: Optional[Callable[["Subscription"], Awaitable[None]]] = None,
        on_cancel: Optional[Callable[["Subscription"], None]] = None,
    ):
        self.table = table
        self.column = column
        self.value = value
        self._on_start = on_start
        self._on_cancel = on_cancel
        self._queue: asyncio.Queue = asyncio.Queue()
        self.started = False
        self.cancelled = False

    def matches(self, change: Change) -> bool:
        """Check whether a change passes this subscription's filter."""
        if change.table != self.table:
            return False
        if self.column is None:
            return True
        return change.row.get(self.column) == self.value

    async def start(self) -> "Subscription":
        """Begin receiving changes. Idempotent."""
        if self.cancelled:
            raise SubscriptionClosedError("Subscription was cancelled")
        if not self.started:
            self.started = True
            if self._on_start is not None:
                try:
                    await self._on_start(self)
                except BaseException:
                    self.started = False
                    raise
        return self

    def cancel(self) -> None:
        """Stop receiving changes and release the handle. Idempotent."""
        if self.cancelled:
            return
        self.cancelled = True
        self._queue.put_nowait(_CLOSED)
        if self._on_cancel is not None:
            self._on_cancel(self)

    def deliver(self, change: Change) -> None:
        """Queue a change for the reader (called by the store)."""
        if self.started and not self.cancelled:
            self._queue.put_nowait(change)

    def fail(self, error: Exception) -> None:
        """Surface a feed failure to the reader, then close."""
        if not self.cancelled:
            self._queue.put_nowait(error)
            self.cancel()

    async def get(self) -> Change:
        """Wait for the next change.

        Raises:
            SubscriptionClosedError: If the subscription is cancelled.
            StoreUnavailableError: If the feed failed.
        """
        if self.cancelled and self._queue.empty():
            raise SubscriptionClosedError("Subscription was cancelled")
        item = await self._queue.get()
        if item is _CLOSED:
            # Leave the marker for any other waiter
            self._queue.put_nowait(_CLOSED)
            raise SubscriptionClosedError("Subscription was cancelled")
        if isinstance(item, Exception):
            raise item
        return item


class MappedSubscription(BaseSubscription):
    """A subscription that filters and converts changes from another one."""

    def __init__(
        self,
        source: Subscription,
        mapper: Callable[[Change], Any],
        predicate: Optional[Callable[[Change], bool]] = None,
    ):
        self.source = source
        self._mapper = mapper
        self._predicate = predicate

    @property
    def cancelled(self) -> bool:
        return self.source.cancelled

    async def start(self) -> "MappedSubscription":
        await self.source.start()
        return self

    def cancel(self) -> None:
        self.source.cancel()

    async def get(self) -> Any:
        while True:
            change = await self.source.get()
            if self._predicate is None or self._predicate(change):
                return self._mapper(change)


class Store(Protocol):
    """Protocol for a durable store with a change feed."""

    async def insert(self, table: str, row: Row) -> Row:
        """Insert a row; the store assigns created_at (and id where keyed by it).

        Raises:
            ConflictError: If the primary key already exists.
        """
        ...

    async def update_where(
        self, table: str, match: Row, changes: Row
    ) -> Optional[Row]:
        """Atomically apply changes if every match column equals the current value.

        Returns:
            The updated row, or None if nothing matched.
        """
        ...

    async def select(
        self,
        table: str,
        where: Optional[Row] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> list[Row]:
        """Return rows whose columns equal every value in where."""
        ...

    def subscribe(
        self, table: str, column: Optional[str] = None, value: Any = None
    ) -> Subscription:
        """Create an unstarted change-feed subscription."""
        ...

    async def close(self) -> None:
        """Release resources and cancel all subscriptions."""
        ...
