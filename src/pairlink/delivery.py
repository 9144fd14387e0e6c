"""Per-device live feed of content addressed to that device.

The live feed only carries entries created after the subscription started
and delivery is at-least-once. A device coming back after a gap should
call missed() and drop entries whose id it has already seen.
"""

import logging
from typing import Iterable, Optional

from pairlink.channel import ContentChannel
from pairlink.models import CONTENT_TABLE, ContentEntry
from pairlink.store.base import Change, ChangeEvent, MappedSubscription, Store

logger = logging.getLogger(__name__)


class DeliverySubscriber:
    """Tails the content log for one recipient."""

    def __init__(self, store: Store, channel: Optional[ContentChannel] = None):
        self.store = store
        self.channel = channel or ContentChannel(store)

    def subscribe(self, device_id: str) -> MappedSubscription:
        """Live feed of entries whose recipient is device_id.

        Entries of one connection arrive in created_at order. No order is
        promised across connections.

        Returns:
            Unstarted subscription yielding ContentEntry.
        """
        source = self.store.subscribe(CONTENT_TABLE, "recipient_device_id", device_id)

        def is_insert(change: Change) -> bool:
            return change.event == ChangeEvent.INSERT

        return MappedSubscription(
            source, lambda change: ContentEntry.from_dict(change.row), is_insert
        )

    async def missed(
        self,
        connection_id: str,
        device_id: str,
        seen_ids: Iterable[int] = (),
    ) -> list[ContentEntry]:
        """Entries addressed to device_id that the caller has not seen yet.

        Args:
            connection_id: Connection to reconcile.
            device_id: Recipient device.
            seen_ids: Ids already received from the live feed.

        Returns:
            Unseen entries, oldest first.
        """
        seen = set(seen_ids)
        entries = await self.channel.history(connection_id)
        unseen = [
            entry
            for entry in entries
            if entry.recipient_device_id == device_id and entry.id not in seen
        ]
        if unseen:
            logger.debug(f"Reconciled {len(unseen)} missed entries")
        return unseen
