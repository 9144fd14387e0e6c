"""Device session: the explicit per-device context for pairing and sharing.

A DeviceSession is created when the application starts, owns this
device's identity for the rest of the run and is closed when the
application ends. Closing cancels every live feed it opened.

Usage:
    async with DeviceSession(store) as host:
        await host.host()
        print(host.connection_url("https://example.test"))
        pin = await host.issue_pin()
        peer = await host.wait_connected(timeout=300)
        await host.send("hello")
"""

import asyncio
import logging
from typing import Optional, Union

from pairlink.channel import DEFAULT_MAX_LENGTH, ContentChannel
from pairlink.codes import new_connection_id
from pairlink.delivery import DeliverySubscriber
from pairlink.errors import (
    InvalidTransitionError,
    NotFoundError,
    PairlinkError,
    StoreUnavailableError,
)
from pairlink.identity import new_device_identity
from pairlink.models import ConnectionRecord, ConnectionStatus, ContentEntry, ContentType
from pairlink.pairing.pairing_manager import PairingManager
from pairlink.pairing.qr_generator import (
    PairingPayload,
    decode_pairing_payload,
)
from pairlink.pairing.session import PairingSession, Role, SessionState
from pairlink.store.base import BaseSubscription, MappedSubscription, Store

logger = logging.getLogger(__name__)


class DeviceSession:
    """One device's pairing and content session."""

    def __init__(
        self,
        store: Store,
        device_id: Optional[str] = None,
        pairing: Optional[PairingManager] = None,
        max_length: int = DEFAULT_MAX_LENGTH,
    ):
        """Initialize device session.

        Args:
            store: Shared store with change feed.
            device_id: Identity to use; a fresh one is generated if omitted.
            pairing: Pairing manager; built from store if omitted.
            max_length: Maximum characters per sent payload.
        """
        self.store = store
        self.pairing = pairing or PairingManager(store)
        self.channel = ContentChannel(store, self.pairing, max_length)
        self.delivery = DeliverySubscriber(store, self.channel)
        self.session = PairingSession(device_id=device_id or new_device_identity())

        self._subscriptions: list[BaseSubscription] = []
        self._watch_task: Optional[asyncio.Task] = None
        self._settled = asyncio.Event()
        self._failure: Optional[PairlinkError] = None

    @property
    def device_id(self) -> str:
        return self.session.device_id

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def connection_id(self) -> Optional[str]:
        return self.session.connection_id

    @property
    def peer_device_id(self) -> Optional[str]:
        return self.session.peer_device_id

    def _track(self, subscription: BaseSubscription) -> None:
        self._subscriptions.append(subscription)

    def _check_open(self) -> None:
        if self.session.state == SessionState.CLOSED:
            raise InvalidTransitionError("Device session is closed")

    async def host(self) -> ConnectionRecord:
        """Create a pending connection and start watching it for a guest.

        Returns:
            The pending record.

        Raises:
            InvalidTransitionError: If this session is not idle.
            ConflictError: If the generated id collides.
            StoreUnavailableError: If the store cannot be reached.
        """
        self._check_open()
        self.session.transition_to(SessionState.INITIATING)
        connection_id = new_connection_id()

        # Watch before creating so the connect update cannot be missed
        observer = self.pairing.observe_connection(connection_id)
        try:
            await observer.start()
            record = await self.pairing.initiate_connection(
                connection_id, self.device_id
            )
        except PairlinkError:
            observer.cancel()
            self.session.transition_to(SessionState.FAILED)
            raise
        self._track(observer)

        self.session.role = Role.HOST
        self.session.connection_id = connection_id
        self.session.transition_to(SessionState.PENDING)
        self._settled.clear()
        self._failure = None
        self._watch_task = asyncio.create_task(self._watch(observer))

        logger.info(f"Hosting connection {connection_id[:8]}...")
        return record

    async def _watch(self, observer: MappedSubscription) -> None:
        """Follow the hosted record until a guest attaches or it expires."""
        try:
            async for record in observer:
                if record.is_connected:
                    self._on_connected(record)
                    break
                if record.status == ConnectionStatus.EXPIRED:
                    logger.info(f"Connection expired: {record.connection_id[:8]}...")
                    self._fail(NotFoundError("Connection expired"))
                    break
            else:
                # Feed ended without a verdict (store closed or feed cancelled)
                if self.session.state == SessionState.PENDING:
                    logger.warning("Connection feed closed while pending")
                    self._fail(StoreUnavailableError("Connection feed closed"))
        except PairlinkError as e:
            logger.error(f"Connection feed failed: {e}")
            self._fail(e)
        finally:
            observer.cancel()

    def _on_connected(self, record: ConnectionRecord) -> None:
        self.session.peer_device_id = record.peer_of(self.device_id)
        self.session.pin_code = None
        self.session.transition_to(SessionState.CONNECTED)
        self._settled.set()
        logger.info(f"Paired on connection {record.connection_id[:8]}...")

    def _fail(self, error: PairlinkError) -> None:
        if self.session.state == SessionState.PENDING:
            self.session.transition_to(SessionState.FAILED)
        self._failure = error
        self._settled.set()

    async def wait_connected(self, timeout: Optional[float] = None) -> str:
        """Wait for a guest to join the hosted connection.

        Returns:
            The peer's device id.

        Raises:
            asyncio.TimeoutError: If no guest joins within timeout.
            NotFoundError: If the connection expired.
            StoreUnavailableError: If the connection feed failed.
        """
        if self.session.is_connected:
            return self.session.peer_device_id or ""
        if self._watch_task is None:
            raise InvalidTransitionError("Not hosting a connection")

        await asyncio.wait_for(self._settled.wait(), timeout=timeout)
        if self._failure is not None:
            raise self._failure
        return self.session.peer_device_id or ""

    async def issue_pin(self) -> str:
        """Issue (or replace) the PIN for the hosted connection."""
        self._check_open()
        if self.session.role != Role.HOST or self.session.state != SessionState.PENDING:
            raise InvalidTransitionError("No pending hosted connection")

        pin = await self.pairing.issue_pin(self.session.connection_id, self.device_id)
        self.session.transition_to(SessionState.PENDING)
        self.session.pin_code = pin
        return pin

    def pairing_payload(self) -> PairingPayload:
        if self.session.role != Role.HOST or self.session.connection_id is None:
            raise InvalidTransitionError("Not hosting a connection")
        return PairingPayload(self.session.connection_id, self.device_id)

    def connection_url(self, base_url: str) -> str:
        """Connection URL to show as a QR code."""
        return self.pairing_payload().to_url(base_url)

    def connection_json(self) -> str:
        """Compact JSON form of the QR payload."""
        return self.pairing_payload().to_json()

    def _joined(self, record: ConnectionRecord) -> None:
        self.session.role = Role.GUEST
        self.session.connection_id = record.connection_id
        self.session.peer_device_id = record.host_device_id
        self.session.transition_to(SessionState.CONNECTED)
        self._settled.set()

    async def join_by_qr(self, payload: Union[str, PairingPayload]) -> str:
        """Join a hosted connection from a scanned QR payload.

        Returns:
            The host's device id.

        Raises:
            InvalidPayloadError: If the payload cannot be decoded.
            NotFoundError: If the code is invalid or expired.
            AlreadyConnectedError: If another guest joined first.
        """
        self._check_open()
        if self.session.state != SessionState.IDLE:
            raise InvalidTransitionError(f"Cannot join from {self.session.state}")
        if isinstance(payload, str):
            payload = decode_pairing_payload(payload)

        record = await self.pairing.connect_by_qr(
            payload.connection_id, payload.host_device_id, self.device_id
        )
        self._joined(record)
        return record.host_device_id

    async def join_by_pin(self, pin: str) -> str:
        """Join a hosted connection by PIN.

        Returns:
            The host's device id.

        Raises:
            PinFormatError: If the PIN is not four digits.
            NotFoundError: If no pending connection holds the PIN.
            AlreadyConnectedError: If another guest consumed it first.
        """
        self._check_open()
        if self.session.state != SessionState.IDLE:
            raise InvalidTransitionError(f"Cannot join from {self.session.state}")

        record = await self.pairing.connect_by_pin(pin, self.device_id)
        self._joined(record)
        return record.host_device_id

    async def send(
        self, body: str, content_type: Union[ContentType, str] = ContentType.TEXT
    ) -> ContentEntry:
        """Send a payload to the current peer.

        The peer is resolved from the connection record at send time.

        Raises:
            NotFoundError: If pairing has not completed.
            ContentError: If the body is invalid.
            StoreUnavailableError: If the append fails.
        """
        self._check_open()
        if self.session.connection_id is None or not self.session.is_connected:
            raise NotFoundError("Not connected")

        peer = await self.pairing.resolve_peer(self.session.connection_id, self.device_id)
        self.session.peer_device_id = peer
        return await self.channel.send(
            self.session.connection_id, self.device_id, peer, content_type, body
        )

    async def history(self) -> list[ContentEntry]:
        """All entries of the current connection, oldest first."""
        if self.session.connection_id is None:
            raise NotFoundError("No connection")
        return await self.channel.history(self.session.connection_id)

    async def inbox(self) -> MappedSubscription:
        """Start and return a live feed of entries addressed to this device."""
        self._check_open()
        subscription = self.delivery.subscribe(self.device_id)
        await subscription.start()
        self._track(subscription)
        return subscription

    async def _stop_watch(self) -> None:
        if self._watch_task is not None:
            self._watch_task.cancel()
            try:
                await self._watch_task
            except asyncio.CancelledError:
                pass
            self._watch_task = None

    async def reset(self) -> None:
        """Return a failed session to idle so it can host or join again.

        The device identity is kept. Inbox feeds stay open.

        Raises:
            InvalidTransitionError: If the session has not failed.
        """
        self._check_open()
        self.session.reset()
        await self._stop_watch()
        self._subscriptions = [s for s in self._subscriptions if not s.cancelled]
        self._failure = None
        self._settled.clear()
        logger.debug(f"Device session reset: {self.device_id[:8]}...")

    async def close(self) -> None:
        """Cancel every feed opened by this session."""
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions.clear()

        await self._stop_watch()

        self.session.transition_to(SessionState.CLOSED)
        logger.debug(f"Device session closed: {self.device_id[:8]}...")

    async def __aenter__(self) -> "DeviceSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
