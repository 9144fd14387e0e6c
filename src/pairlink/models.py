"""Records shared between devices through the store."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

CONNECTIONS_TABLE = "connections"
CONTENT_TABLE = "shared_content"


class ConnectionStatus(str, Enum):
    """Lifecycle of a pairing record."""

    PENDING = "pending"
    CONNECTED = "connected"
    EXPIRED = "expired"


class ContentType(str, Enum):
    """Discriminator for shared payloads."""

    TEXT = "text"
    URL = "url"


@dataclass
class ConnectionRecord:
    """One pairing attempt between a host and (eventually) a guest.

    Attributes:
        connection_id: Unguessable primary key chosen by the host.
        host_device_id: Device that initiated the connection.
        status: Current status.
        guest_device_id: Joining device, set once when pairing succeeds.
        pin_code: Outstanding PIN, cleared when consumed.
        created_at: Store-assigned ISO timestamp.
    """

    connection_id: str
    host_device_id: str
    status: ConnectionStatus = ConnectionStatus.PENDING
    guest_device_id: Optional[str] = None
    pin_code: Optional[str] = None
    created_at: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status == ConnectionStatus.PENDING

    @property
    def is_connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED

    def peer_of(self, device_id: str) -> Optional[str]:
        """Resolve the other party for a device.

        Returns:
            The peer's device id, or None if the record is not connected
            or the device is not a party to it.
        """
        if not self.is_connected:
            return None
        if device_id == self.host_device_id:
            return self.guest_device_id
        if device_id == self.guest_device_id:
            return self.host_device_id
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a store row."""
        return {
            "connection_id": self.connection_id,
            "host_device_id": self.host_device_id,
            "guest_device_id": self.guest_device_id,
            "pin_code": self.pin_code,
            "status": self.status.value,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "ConnectionRecord":
        """Create from a store row."""
        return cls(
            connection_id=d["connection_id"],
            host_device_id=d["host_device_id"],
            status=ConnectionStatus(d.get("status", ConnectionStatus.PENDING.value)),
            guest_device_id=d.get("guest_device_id"),
            pin_code=d.get("pin_code"),
            created_at=d.get("created_at"),
        )


@dataclass(frozen=True)
class ContentEntry:
    """An immutable payload appended to a connection's content log."""

    connection_id: str
    content_type: ContentType
    content: str
    sender_device_id: str
    recipient_device_id: str
    created_at: Optional[str] = None
    id: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a store row (store-assigned fields omitted when unset)."""
        d: dict[str, Any] = {
            "connection_id": self.connection_id,
            "content_type": self.content_type.value,
            "content": self.content,
            "sender_device_id": self.sender_device_id,
            "recipient_device_id": self.recipient_device_id,
        }
        if self.created_at is not None:
            d["created_at"] = self.created_at
        if self.id is not None:
            d["id"] = self.id
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "ContentEntry":
        """Create from a store row."""
        return cls(
            connection_id=d["connection_id"],
            content_type=ContentType(d.get("content_type", ContentType.TEXT.value)),
            content=d["content"],
            sender_device_id=d["sender_device_id"],
            recipient_device_id=d["recipient_device_id"],
            created_at=d.get("created_at"),
            id=d.get("id"),
        )
