"""Store client for a pairlink relay server.

Implements the Store protocol over the relay's HTTP API, with one
WebSocket per started subscription for the change feed.
"""

import asyncio
import json
import logging
from typing import Any, Optional

import aiohttp

from pairlink.errors import ConflictError, NotFoundError, StoreUnavailableError
from pairlink.store.base import Change, Row, Subscription, primary_key

logger = logging.getLogger(__name__)


class RemoteStore:
    """Store backed by a remote RelayServer."""

    REQUEST_TIMEOUT = 10.0  # seconds
    READY_TIMEOUT = 10.0  # seconds

    def __init__(
        self,
        base_url: str,
        http_session: Optional[aiohttp.ClientSession] = None,
    ):
        """Initialize remote store.

        Args:
            base_url: Relay server URL, e.g. http://127.0.0.1:8787.
            http_session: Optional aiohttp session (for testing).
        """
        self._base_url = base_url.rstrip("/")
        self._session = http_session
        self._owns_session = http_session is None
        self._feeds: dict[int, tuple[aiohttp.ClientWebSocketResponse, asyncio.Task]] = {}
        self._subscriptions: list[Subscription] = []

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def _url(self, table: str, action: str) -> str:
        return f"{self._base_url}/tables/{table}/{action}"

    async def _post(self, table: str, action: str, payload: dict[str, Any]) -> dict:
        """POST a JSON body and return the decoded JSON response.

        Raises:
            ConflictError: On 409.
            NotFoundError: On 404.
            StoreUnavailableError: On any other failure.
        """
        primary_key(table)
        session = self._get_session()
        try:
            async with session.post(
                self._url(table, action),
                json=payload,
                timeout=aiohttp.ClientTimeout(total=self.REQUEST_TIMEOUT),
            ) as resp:
                try:
                    data = await resp.json()
                except (aiohttp.ContentTypeError, json.JSONDecodeError):
                    data = {}
                error = data.get("error", resp.reason) if isinstance(data, dict) else None

                if resp.status == 409:
                    raise ConflictError(error or "Conflict")
                if resp.status == 404:
                    raise NotFoundError(error or "Not found")
                if resp.status == 400:
                    raise ValueError(error or "Bad request")
                if resp.status >= 300:
                    raise StoreUnavailableError(
                        f"Relay returned {resp.status}: {error}"
                    )
                return data
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Relay request failed: {e}")
            raise StoreUnavailableError(f"Relay unreachable: {e}") from e

    async def insert(self, table: str, row: Row) -> Row:
        data = await self._post(table, "rows", {"row": row})
        return data["row"]

    async def update_where(
        self, table: str, match: Row, changes: Row
    ) -> Optional[Row]:
        data = await self._post(
            table, "update", {"match": match, "changes": changes}
        )
        return data.get("row")

    async def select(
        self,
        table: str,
        where: Optional[Row] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> list[Row]:
        data = await self._post(
            table,
            "query",
            {"where": where or {}, "order_by": order_by, "descending": descending},
        )
        return data.get("rows", [])

    def subscribe(
        self, table: str, column: Optional[str] = None, value: Any = None
    ) -> Subscription:
        primary_key(table)
        subscription = Subscription(
            table,
            column,
            value,
            on_start=self._open_feed,
            on_cancel=self._close_feed,
        )
        return subscription

    async def _open_feed(self, subscription: Subscription) -> None:
        """Connect the WebSocket and wait until the relay is subscribed.

        Raises:
            StoreUnavailableError: If the feed cannot be established.
        """
        params = {}
        if subscription.column is not None:
            params = {"column": subscription.column, "value": str(subscription.value)}

        session = self._get_session()
        try:
            ws = await session.ws_connect(
                self._url(subscription.table, "changes"),
                params=params,
                heartbeat=30.0,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise StoreUnavailableError(f"Change feed unreachable: {e}") from e

        try:
            ready = await asyncio.wait_for(ws.receive_json(), timeout=self.READY_TIMEOUT)
        except (asyncio.TimeoutError, TypeError, ValueError) as e:
            await ws.close()
            raise StoreUnavailableError("Change feed did not become ready") from e
        if ready.get("type") != "ready":
            await ws.close()
            raise StoreUnavailableError("Unexpected change feed handshake")

        task = asyncio.create_task(self._read_feed(subscription, ws))
        self._feeds[id(subscription)] = (ws, task)
        self._subscriptions.append(subscription)
        logger.debug(f"Change feed open for {subscription.table}")

    async def _read_feed(
        self,
        subscription: Subscription,
        ws: aiohttp.ClientWebSocketResponse,
    ) -> None:
        """Deliver incoming changes until the socket or subscription closes."""
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        data = json.loads(msg.data)
                    except json.JSONDecodeError:
                        logger.warning("Malformed change feed message")
                        continue
                    if isinstance(data, dict) and data.get("type") == "change":
                        subscription.deliver(Change.from_dict(data))
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    break
        finally:
            if not ws.closed:
                await ws.close()

        if not subscription.cancelled:
            logger.warning(f"Change feed closed by relay for {subscription.table}")
            subscription.fail(StoreUnavailableError("Change feed closed"))

    def _close_feed(self, subscription: Subscription) -> None:
        feed = self._feeds.pop(id(subscription), None)
        if feed is not None:
            _, task = feed
            task.cancel()
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    async def close(self) -> None:
        """Cancel every feed and close the HTTP session if owned."""
        tasks = [task for _, task in self._feeds.values()]
        for subscription in list(self._subscriptions):
            subscription.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None
