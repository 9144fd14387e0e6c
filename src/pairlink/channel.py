"""Content channel: the append-only log of payloads shared over a connection."""

import logging
from typing import Optional, Union

from pairlink.errors import ContentError, NotFoundError
from pairlink.models import CONTENT_TABLE, ContentEntry, ContentType
from pairlink.pairing.pairing_manager import PairingManager
from pairlink.store.base import Store

logger = logging.getLogger(__name__)

DEFAULT_MAX_LENGTH = 10000


def validate_content(body: str, max_length: int = DEFAULT_MAX_LENGTH) -> str:
    """Check a payload body before it is sent.

    Raises:
        ContentError: If the body is blank or longer than max_length.
    """
    if not isinstance(body, str) or not body.strip():
        raise ContentError("Content is empty")
    if len(body) > max_length:
        raise ContentError(f"Content exceeds {max_length} characters")
    return body


class ContentChannel:
    """Send and read entries of a connection's content log.

    Entries are never updated or deleted.
    """

    def __init__(
        self,
        store: Store,
        pairing: Optional[PairingManager] = None,
        max_length: int = DEFAULT_MAX_LENGTH,
    ):
        """Initialize content channel.

        Args:
            store: Store holding connections and content.
            pairing: Used to resolve peers; built from store if omitted.
            max_length: Maximum characters per payload.
        """
        self.store = store
        self.pairing = pairing or PairingManager(store)
        self.max_length = max_length

    async def send(
        self,
        connection_id: str,
        sender_device_id: str,
        recipient_device_id: str,
        content_type: Union[ContentType, str],
        body: str,
    ) -> ContentEntry:
        """Append one entry addressed to the sender's current peer.

        The peer is re-resolved from the connection record on every send.

        Returns:
            The stored entry, with store-assigned id and created_at.

        Raises:
            ContentError: If the type or body is invalid.
            NotFoundError: If the connection is not connected, or the
                recipient is not the sender's peer.
            StoreUnavailableError: If the append fails.
        """
        try:
            content_type = ContentType(content_type)
        except ValueError:
            raise ContentError(f"Unsupported content type: {content_type}") from None
        validate_content(body, self.max_length)

        peer = await self.pairing.resolve_peer(connection_id, sender_device_id)
        if peer != recipient_device_id:
            raise NotFoundError("Recipient is not the connected peer")

        entry = ContentEntry(
            connection_id=connection_id,
            content_type=content_type,
            content=body,
            sender_device_id=sender_device_id,
            recipient_device_id=recipient_device_id,
        )
        row = await self.store.insert(CONTENT_TABLE, entry.to_dict())
        logger.debug(f"Content sent on {connection_id[:8]}... (id={row.get('id')})")
        return ContentEntry.from_dict(row)

    async def history(self, connection_id: str) -> list[ContentEntry]:
        """Read every entry of a connection, oldest first.

        Re-reading returns the same prefix plus anything appended since.
        """
        rows = await self.store.select(
            CONTENT_TABLE,
            {"connection_id": connection_id},
            order_by="created_at",
        )
        return [ContentEntry.from_dict(row) for row in rows]
