"""HTTP relay exposing a store to remote devices.

The relay does nothing beyond row storage and change notification:
- POST /tables/{table}/rows      insert a row
- POST /tables/{table}/update    conditional update {match, changes}
- POST /tables/{table}/query     equality query {where, order_by, descending}
- GET  /tables/{table}/changes   WebSocket change feed (?column=&value=)

Pairing rules live entirely on the devices. Reads must be keyed by a value
the caller already holds (see READ_FILTERS), so the relay never lists rows
wholesale and a PIN can only be found by guessing it, one rate limited
query at a time.
"""

import asyncio
import json
import logging
import time
from collections import deque
from typing import Any, Callable, Dict, Optional

from aiohttp import WSMsgType, web

from pairlink.errors import ConflictError, NotFoundError, StoreUnavailableError
from pairlink.models import CONNECTIONS_TABLE, CONTENT_TABLE
from pairlink.store.base import Store, SubscriptionClosedError, primary_key

logger = logging.getLogger(__name__)


class RateLimiter:
    """Per-client sliding window limit.

    Clients that stay quiet for a whole window are forgotten. The sweep runs
    at most once per window, on the next request after it falls due.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize rate limiter.

        Args:
            max_requests: Requests allowed per key within one window.
            window_seconds: Window length.
            clock: Monotonic time source (for testing).
        """
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._next_sweep = clock() + window_seconds

    @property
    def tracked_keys(self) -> int:
        return len(self._hits)

    def _sweep(self, cutoff: float) -> None:
        idle = [key for key, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for key in idle:
            del self._hits[key]
        if idle:
            logger.debug(f"Rate limiter dropped {len(idle)} idle client(s)")

    def is_allowed(self, key: str) -> bool:
        """Count a request from key unless the key is over its limit.

        Args:
            key: Client identifier (remote address).

        Returns:
            True if the request may proceed.
        """
        now = self._clock()
        cutoff = now - self.window_seconds
        if now >= self._next_sweep:
            self._sweep(cutoff)
            self._next_sweep = now + self.window_seconds

        hits = self._hits.setdefault(key, deque())
        while hits and hits[0] <= cutoff:
            hits.popleft()
        if len(hits) >= self.max_requests:
            return False
        hits.append(now)
        return True


# Reads must pin one of these columns to a value. A client only sees rows
# for a connection id, a PIN or a recipient it already knows.
READ_FILTERS = {
    CONNECTIONS_TABLE: ("connection_id", "pin_code"),
    CONTENT_TABLE: ("connection_id", "recipient_device_id"),
}


class RelayServer:
    """aiohttp application serving a Store over HTTP and WebSocket."""

    def __init__(
        self,
        store: Store,
        max_requests: int = 120,
        window_seconds: int = 60,
    ):
        """Initialize relay server.

        Args:
            store: Backing store.
            max_requests: Requests per client IP per window on data endpoints.
            window_seconds: Rate limit window.
        """
        self.store = store
        self.limiter = RateLimiter(max_requests, window_seconds)
        self.app = web.Application()
        self._runner: Optional[web.AppRunner] = None
        self._feeds: set[web.WebSocketResponse] = set()
        self._setup_routes()

    def _setup_routes(self) -> None:
        """Set up HTTP routes."""
        self.app.router.add_get("/health", self._handle_health)
        self.app.router.add_post("/tables/{table}/rows", self._handle_insert)
        self.app.router.add_post("/tables/{table}/update", self._handle_update)
        self.app.router.add_post("/tables/{table}/query", self._handle_query)
        self.app.router.add_get("/tables/{table}/changes", self._handle_changes)

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.Response(text="OK")

    def _error(self, message: str, status: int) -> web.Response:
        return web.json_response({"error": message}, status=status)

    async def _read_body(self, request: web.Request) -> Dict[str, Any]:
        """Parse a JSON object body.

        Raises:
            web.HTTPBadRequest: If the body is not a JSON object.
        """
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise web.HTTPBadRequest(
                text=json.dumps({"error": "Invalid JSON"}),
                content_type="application/json",
            )
        if not isinstance(body, dict):
            raise web.HTTPBadRequest(
                text=json.dumps({"error": "Expected JSON object"}),
                content_type="application/json",
            )
        return body

    def _check_request(self, request: web.Request) -> Optional[web.Response]:
        """Rate limit and validate the table name."""
        client_ip = request.remote or "unknown"
        if not self.limiter.is_allowed(client_ip):
            logger.warning(f"Rate limited {client_ip}")
            return self._error("Rate limited", 429)
        try:
            primary_key(request.match_info["table"])
        except NotFoundError as e:
            return self._error(str(e), 404)
        return None

    async def _run(self, operation) -> Any:
        """Await a store operation, mapping errors to HTTP responses."""
        try:
            return await operation
        except ConflictError as e:
            raise web.HTTPConflict(
                text=json.dumps({"error": str(e)}), content_type="application/json"
            )
        except NotFoundError as e:
            raise web.HTTPNotFound(
                text=json.dumps({"error": str(e)}), content_type="application/json"
            )
        except StoreUnavailableError as e:
            logger.error(f"Store unavailable: {e}")
            raise web.HTTPServiceUnavailable(
                text=json.dumps({"error": "Store unavailable"}),
                content_type="application/json",
            )
        except ValueError as e:
            raise web.HTTPBadRequest(
                text=json.dumps({"error": str(e)}), content_type="application/json"
            )

    async def _handle_insert(self, request: web.Request) -> web.Response:
        rejected = self._check_request(request)
        if rejected is not None:
            return rejected

        body = await self._read_body(request)
        row = body.get("row")
        if not isinstance(row, dict):
            return self._error("Missing row", 400)

        table = request.match_info["table"]
        inserted = await self._run(self.store.insert(table, row))
        return web.json_response({"row": inserted}, status=201)

    async def _handle_update(self, request: web.Request) -> web.Response:
        rejected = self._check_request(request)
        if rejected is not None:
            return rejected

        body = await self._read_body(request)
        match = body.get("match")
        changes = body.get("changes")
        if not isinstance(match, dict) or not isinstance(changes, dict):
            return self._error("Missing match or changes", 400)

        table = request.match_info["table"]
        updated = await self._run(self.store.update_where(table, match, changes))
        return web.json_response({"row": updated})

    async def _handle_query(self, request: web.Request) -> web.Response:
        rejected = self._check_request(request)
        if rejected is not None:
            return rejected

        body = await self._read_body(request)
        where = body.get("where") or {}
        if not isinstance(where, dict):
            return self._error("Invalid where", 400)

        table = request.match_info["table"]
        if not any(where.get(column) is not None for column in READ_FILTERS[table]):
            return self._error(
                f"Query must filter on one of: {', '.join(READ_FILTERS[table])}", 400
            )

        rows = await self._run(
            self.store.select(
                table,
                where,
                order_by=body.get("order_by"),
                descending=bool(body.get("descending", False)),
            )
        )
        return web.json_response({"rows": rows})

    async def _handle_changes(self, request: web.Request) -> web.StreamResponse:
        """Stream changes matching the filter until either side closes."""
        rejected = self._check_request(request)
        if rejected is not None:
            return rejected

        table = request.match_info["table"]
        column = request.query.get("column")
        value = request.query.get("value")
        if column not in READ_FILTERS[table]:
            return self._error(
                f"Change feed must filter on one of: {', '.join(READ_FILTERS[table])}",
                400,
            )
        if value is None:
            return self._error("column requires value", 400)

        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)
        self._feeds.add(ws)

        subscription = self.store.subscribe(table, column, value)
        pump: Optional[asyncio.Task] = None
        try:
            await subscription.start()
            await ws.send_json({"type": "ready"})
            pump = asyncio.create_task(self._pump(subscription, ws))

            # Clients never send data; this returns when the socket closes
            async for msg in ws:
                if msg.type == WSMsgType.ERROR:
                    logger.warning(f"Change feed error: {ws.exception()}")
                    break
        except StoreUnavailableError as e:
            logger.error(f"Change feed failed: {e}")
            await ws.close(code=1011, message=b"Store unavailable")
        finally:
            subscription.cancel()
            if pump is not None:
                pump.cancel()
            self._feeds.discard(ws)

        return ws

    async def _pump(self, subscription, ws: web.WebSocketResponse) -> None:
        """Forward store changes to one WebSocket client."""
        try:
            async for change in subscription:
                await ws.send_json({"type": "change", **change.to_dict()})
        except (ConnectionResetError, SubscriptionClosedError):
            pass
        except StoreUnavailableError as e:
            logger.error(f"Change feed failed: {e}")
            await ws.close(code=1011, message=b"Store unavailable")

    async def start(self, host: str, port: int) -> web.AppRunner:
        """Start serving.

        Args:
            host: Host to bind to.
            port: Port to bind to.

        Returns:
            App runner (for cleanup).
        """
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, host, port)
        await site.start()
        logger.info(f"Relay server started on {host}:{port}")
        return self._runner

    async def stop(self) -> None:
        """Close live feeds and stop serving."""
        for ws in list(self._feeds):
            await ws.close()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Relay server stopped")
