"""Pairing manager drives connection records from pending to connected.

All state lives in the store. Every transition is a conditional update
guarded on the current status, so when several guests race for the same
code exactly one wins and the rest get AlreadyConnectedError. This
module holds no locks of its own.
"""

import logging
from typing import Optional

from pairlink.codes import generate_unique_pin, is_valid_token, validate_pin
from pairlink.errors import (
    AlreadyConnectedError,
    InvalidIdentifierError,
    NotFoundError,
)
from pairlink.models import CONNECTIONS_TABLE, ConnectionRecord, ConnectionStatus
from pairlink.store.base import Change, MappedSubscription, Store

logger = logging.getLogger(__name__)

PENDING = ConnectionStatus.PENDING.value
CONNECTED = ConnectionStatus.CONNECTED.value


def _require_token(value: str, name: str) -> None:
    if not is_valid_token(value):
        raise InvalidIdentifierError(f"Invalid {name}")


class PairingManager:
    """Pairing operations over a Store.

    One manager can serve any number of devices; callers pass the device
    ids explicitly. DeviceSession wraps it for a single device.
    """

    def __init__(self, store: Store, pin_max_attempts: int = 20):
        """Initialize pairing manager.

        Args:
            store: Durable store with change feed.
            pin_max_attempts: PIN draws before issue_pin gives up on collisions.
        """
        self.store = store
        self.pin_max_attempts = pin_max_attempts

    async def initiate_connection(
        self, connection_id: str, host_device_id: str
    ) -> ConnectionRecord:
        """Create a pending connection record.

        Args:
            connection_id: Fresh id generated by the host.
            host_device_id: Host's device identity.

        Returns:
            The stored record.

        Raises:
            ConflictError: If connection_id already exists.
        """
        _require_token(connection_id, "connection id")
        _require_token(host_device_id, "host device id")

        record = ConnectionRecord(
            connection_id=connection_id, host_device_id=host_device_id
        )
        row = await self.store.insert(CONNECTIONS_TABLE, record.to_dict())
        logger.info(f"Connection initiated: {connection_id[:8]}...")
        return ConnectionRecord.from_dict(row)

    async def get_connection(self, connection_id: str) -> ConnectionRecord:
        """Read a connection record.

        Raises:
            NotFoundError: If no record exists.
        """
        rows = await self.store.select(
            CONNECTIONS_TABLE, {"connection_id": connection_id}
        )
        if not rows:
            raise NotFoundError("Connection not found")
        return ConnectionRecord.from_dict(rows[0])

    async def _pin_taken(self, pin: str) -> bool:
        rows = await self.store.select(
            CONNECTIONS_TABLE, {"pin_code": pin, "status": PENDING}
        )
        return bool(rows)

    async def issue_pin(self, connection_id: str, host_device_id: str) -> str:
        """Attach a fresh PIN to the host's pending record.

        Any previous PIN on the record is replaced. PINs already held by
        other pending records are redrawn.

        Args:
            connection_id: Pending connection created by the caller.
            host_device_id: Caller's device id; must be the record's host.

        Returns:
            The new 4-digit PIN.

        Raises:
            NotFoundError: If the caller has no pending record with this id.
            ConflictError: If no free PIN could be drawn.
        """
        pin = await generate_unique_pin(self._pin_taken, self.pin_max_attempts)
        row = await self.store.update_where(
            CONNECTIONS_TABLE,
            {
                "connection_id": connection_id,
                "host_device_id": host_device_id,
                "status": PENDING,
            },
            {"pin_code": pin},
        )
        if row is None:
            raise NotFoundError("No pending connection for this host")

        logger.info(f"PIN issued for connection {connection_id[:8]}...")
        return pin

    async def _lost_race_or_missing(
        self, connection_id: str, host_device_id: Optional[str] = None
    ) -> Exception:
        """Classify a failed conditional update."""
        rows = await self.store.select(
            CONNECTIONS_TABLE, {"connection_id": connection_id}
        )
        if rows:
            record = ConnectionRecord.from_dict(rows[0])
            host_matches = host_device_id is None or record.host_device_id == host_device_id
            if host_matches and record.is_connected:
                logger.info(f"Lost pairing race for {connection_id[:8]}...")
                return AlreadyConnectedError("Connection already has a guest")
        return NotFoundError("No pending connection")

    async def connect_by_qr(
        self,
        connection_id: str,
        host_device_id: str,
        guest_device_id: str,
    ) -> ConnectionRecord:
        """Join a pending connection using identifiers from a QR code.

        Returns:
            The connected record.

        Raises:
            NotFoundError: If there is no pending record for this id and host.
            AlreadyConnectedError: If another guest already joined.
        """
        _require_token(guest_device_id, "guest device id")
        if guest_device_id == host_device_id:
            raise NotFoundError("Cannot pair a device with itself")

        row = await self.store.update_where(
            CONNECTIONS_TABLE,
            {
                "connection_id": connection_id,
                "host_device_id": host_device_id,
                "status": PENDING,
            },
            {
                "status": CONNECTED,
                "guest_device_id": guest_device_id,
                "pin_code": None,
            },
        )
        if row is None:
            raise await self._lost_race_or_missing(connection_id, host_device_id)

        logger.info(f"Connected by QR: {connection_id[:8]}...")
        return ConnectionRecord.from_dict(row)

    async def connect_by_pin(self, pin: str, guest_device_id: str) -> ConnectionRecord:
        """Join the pending connection currently holding a PIN.

        If several pending records share the PIN, the most recently created
        one wins. The PIN is cleared in the same update that connects.

        Returns:
            The connected record.

        Raises:
            PinFormatError: If the PIN is not exactly four digits (checked
                before any store access).
            NotFoundError: If no pending record holds the PIN.
            AlreadyConnectedError: If another guest consumed it first.
        """
        validate_pin(pin)
        _require_token(guest_device_id, "guest device id")

        rows = await self.store.select(
            CONNECTIONS_TABLE,
            {"pin_code": pin, "status": PENDING},
            order_by="created_at",
        )
        if not rows:
            raise NotFoundError("Invalid PIN")
        if len(rows) > 1:
            logger.warning(f"PIN shared by {len(rows)} pending connections")

        # Ascending and stable: the last row is the newest
        record = ConnectionRecord.from_dict(rows[-1])
        if record.host_device_id == guest_device_id:
            raise NotFoundError("Cannot pair a device with itself")

        row = await self.store.update_where(
            CONNECTIONS_TABLE,
            {
                "connection_id": record.connection_id,
                "pin_code": pin,
                "status": PENDING,
            },
            {
                "status": CONNECTED,
                "guest_device_id": guest_device_id,
                "pin_code": None,
            },
        )
        if row is None:
            raise await self._lost_race_or_missing(record.connection_id)

        logger.info(f"Connected by PIN: {record.connection_id[:8]}...")
        return ConnectionRecord.from_dict(row)

    def observe_connection(self, connection_id: str) -> MappedSubscription:
        """Live feed of updates to one connection record.

        Returns:
            Unstarted subscription yielding ConnectionRecord.
        """
        source = self.store.subscribe(CONNECTIONS_TABLE, "connection_id", connection_id)

        def to_record(change: Change) -> ConnectionRecord:
            return ConnectionRecord.from_dict(change.row)

        return MappedSubscription(source, to_record)

    async def resolve_peer(self, connection_id: str, device_id: str) -> str:
        """Look up the other party of a connected record.

        Raises:
            NotFoundError: If the record is missing, not connected, or the
                device is not a party to it.
        """
        record = await self.get_connection(connection_id)
        peer = record.peer_of(device_id)
        if peer is None:
            raise NotFoundError("No connected peer")
        return peer
