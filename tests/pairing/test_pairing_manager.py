"""Tests for pairing manager."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from pairlink.errors import (
    AlreadyConnectedError,
    ConflictError,
    InvalidIdentifierError,
    NotFoundError,
    PinFormatError,
)
from pairlink.models import CONNECTIONS_TABLE, ConnectionStatus
from pairlink.pairing.pairing_manager import PairingManager
from pairlink.store.memory import MemoryStore


class InterleavingStore(MemoryStore):
    """MemoryStore that yields after every query.

    Lets racing guests all read the pending record before any of them
    attempts the conditional update.
    """

    async def select(self, *args, **kwargs):
        rows = await super().select(*args, **kwargs)
        await asyncio.sleep(0)
        return rows


class TestInitiateConnection:
    """Tests for creating pending records."""

    @pytest.mark.asyncio
    async def test_creates_pending_record(self, pairing):
        record = await pairing.initiate_connection("c1", "A")

        assert record.connection_id == "c1"
        assert record.host_device_id == "A"
        assert record.status == ConnectionStatus.PENDING
        assert record.guest_device_id is None
        assert record.pin_code is None
        assert record.created_at is not None

    @pytest.mark.asyncio
    async def test_duplicate_id_conflicts(self, pairing):
        await pairing.initiate_connection("c1", "A")
        with pytest.raises(ConflictError):
            await pairing.initiate_connection("c1", "X")

    @pytest.mark.asyncio
    async def test_rejects_invalid_ids(self, pairing):
        with pytest.raises(InvalidIdentifierError):
            await pairing.initiate_connection("bad id", "A")
        with pytest.raises(InvalidIdentifierError):
            await pairing.initiate_connection("c1", "")


class TestIssuePin:
    """Tests for attaching PINs to pending records."""

    @pytest.mark.asyncio
    async def test_stores_pin_on_record(self, pairing):
        await pairing.initiate_connection("c1", "A")
        pin = await pairing.issue_pin("c1", "A")

        record = await pairing.get_connection("c1")
        assert record.pin_code == pin
        assert len(pin) == 4 and pin.isdigit()
        assert 1000 <= int(pin) <= 9999

    @pytest.mark.asyncio
    async def test_new_pin_replaces_old(self, pairing):
        await pairing.initiate_connection("c1", "A")
        with patch("pairlink.codes.generate_pin", side_effect=["1111", "2222"]):
            first = await pairing.issue_pin("c1", "A")
            second = await pairing.issue_pin("c1", "A")

        assert (first, second) == ("1111", "2222")
        with pytest.raises(NotFoundError):
            await pairing.connect_by_pin("1111", "B")

    @pytest.mark.asyncio
    async def test_only_host_can_issue(self, pairing):
        await pairing.initiate_connection("c1", "A")
        with pytest.raises(NotFoundError):
            await pairing.issue_pin("c1", "B")

    @pytest.mark.asyncio
    async def test_not_after_connected(self, pairing):
        await pairing.initiate_connection("c1", "A")
        await pairing.connect_by_qr("c1", "A", "B")
        with pytest.raises(NotFoundError):
            await pairing.issue_pin("c1", "A")

    @pytest.mark.asyncio
    async def test_unknown_connection(self, pairing):
        with pytest.raises(NotFoundError):
            await pairing.issue_pin("nope", "A")

    @pytest.mark.asyncio
    async def test_redraws_pin_held_by_other_pending(self, pairing):
        await pairing.initiate_connection("c1", "A")
        await pairing.initiate_connection("c2", "X")
        with patch("pairlink.codes.generate_pin", side_effect=["1111", "1111", "2222"]):
            taken = await pairing.issue_pin("c1", "A")
            fresh = await pairing.issue_pin("c2", "X")

        assert taken == "1111"
        assert fresh == "2222"

    @pytest.mark.asyncio
    async def test_gives_up_when_every_draw_collides(self, store):
        pairing = PairingManager(store, pin_max_attempts=3)
        await pairing.initiate_connection("c1", "A")
        await pairing.initiate_connection("c2", "X")
        with patch("pairlink.codes.generate_pin", return_value="1111"):
            await pairing.issue_pin("c1", "A")
            with pytest.raises(ConflictError):
                await pairing.issue_pin("c2", "X")


class TestConnectByQr:
    """Tests for joining with QR identifiers."""

    @pytest.mark.asyncio
    async def test_connects_pending_record(self, pairing):
        await pairing.initiate_connection("c1", "A")
        record = await pairing.connect_by_qr("c1", "A", "B")

        assert record.status == ConnectionStatus.CONNECTED
        assert record.guest_device_id == "B"

    @pytest.mark.asyncio
    async def test_clears_outstanding_pin(self, pairing):
        await pairing.initiate_connection("c1", "A")
        pin = await pairing.issue_pin("c1", "A")
        record = await pairing.connect_by_qr("c1", "A", "B")

        assert record.pin_code is None
        with pytest.raises(NotFoundError):
            await pairing.connect_by_pin(pin, "C")

    @pytest.mark.asyncio
    async def test_host_mismatch(self, pairing):
        await pairing.initiate_connection("c1", "A")
        with pytest.raises(NotFoundError):
            await pairing.connect_by_qr("c1", "forged", "B")

    @pytest.mark.asyncio
    async def test_unknown_connection(self, pairing):
        with pytest.raises(NotFoundError):
            await pairing.connect_by_qr("nope", "A", "B")

    @pytest.mark.asyncio
    async def test_cannot_pair_with_self(self, pairing):
        await pairing.initiate_connection("c1", "A")
        with pytest.raises(NotFoundError):
            await pairing.connect_by_qr("c1", "A", "A")

    @pytest.mark.asyncio
    async def test_second_guest_is_already_connected(self, pairing):
        await pairing.initiate_connection("c1", "A")
        await pairing.connect_by_qr("c1", "A", "B")

        with pytest.raises(AlreadyConnectedError):
            await pairing.connect_by_qr("c1", "A", "C")

    @pytest.mark.asyncio
    async def test_guest_never_changes(self, pairing):
        await pairing.initiate_connection("c1", "A")
        await pairing.connect_by_qr("c1", "A", "B")
        with pytest.raises(AlreadyConnectedError):
            await pairing.connect_by_qr("c1", "A", "C")

        first = await pairing.get_connection("c1")
        second = await pairing.get_connection("c1")
        assert first.guest_device_id == second.guest_device_id == "B"

    @pytest.mark.asyncio
    async def test_expired_record_not_found(self, pairing, store):
        await pairing.initiate_connection("c1", "A")
        await store.update_where(
            CONNECTIONS_TABLE, {"connection_id": "c1"}, {"status": "expired"}
        )
        with pytest.raises(NotFoundError):
            await pairing.connect_by_qr("c1", "A", "B")

    @pytest.mark.asyncio
    async def test_concurrent_guests_single_winner(self, pairing):
        await pairing.initiate_connection("c1", "A")

        results = await asyncio.gather(
            *[pairing.connect_by_qr("c1", "A", f"G{i}") for i in range(8)],
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 7
        assert all(isinstance(e, AlreadyConnectedError) for e in losers)

        record = await pairing.get_connection("c1")
        assert record.guest_device_id == winners[0].guest_device_id


class TestConnectByPin:
    """Tests for joining by PIN."""

    @pytest.mark.asyncio
    async def test_connects_and_clears_pin(self, pairing):
        await pairing.initiate_connection("c1", "A")
        pin = await pairing.issue_pin("c1", "A")

        record = await pairing.connect_by_pin(pin, "B")

        assert record.status == ConnectionStatus.CONNECTED
        assert record.guest_device_id == "B"
        assert record.pin_code is None

    @pytest.mark.asyncio
    async def test_pin_is_single_use(self, pairing):
        await pairing.initiate_connection("c1", "A")
        pin = await pairing.issue_pin("c1", "A")
        await pairing.connect_by_pin(pin, "B")

        with pytest.raises(NotFoundError):
            await pairing.connect_by_pin(pin, "C")

    @pytest.mark.asyncio
    async def test_unknown_pin(self, pairing):
        with pytest.raises(NotFoundError):
            await pairing.connect_by_pin("1234", "B")

    @pytest.mark.asyncio
    async def test_host_cannot_use_own_pin(self, pairing):
        await pairing.initiate_connection("c1", "A")
        pin = await pairing.issue_pin("c1", "A")
        with pytest.raises(NotFoundError):
            await pairing.connect_by_pin(pin, "A")

    @pytest.mark.asyncio
    async def test_collision_most_recent_wins(self, pairing, store, clock):
        """When two pending records share a PIN the newest one is joined."""
        await pairing.initiate_connection("old", "A")
        clock.advance(5)
        await pairing.initiate_connection("new", "X")
        for connection_id in ("old", "new"):
            await store.update_where(
                CONNECTIONS_TABLE, {"connection_id": connection_id}, {"pin_code": "4444"}
            )

        record = await pairing.connect_by_pin("4444", "B")

        assert record.connection_id == "new"
        old = await pairing.get_connection("old")
        assert old.status == ConnectionStatus.PENDING
        assert old.pin_code == "4444"

    @pytest.mark.parametrize("pin", ["123", "12345", "12a4", "", " 1234", "١٢٣٤"])
    @pytest.mark.asyncio
    async def test_format_checked_before_store_access(self, pin):
        store = MagicMock()
        store.select = AsyncMock(return_value=[])
        store.update_where = AsyncMock(return_value=None)
        pairing = PairingManager(store)

        with pytest.raises(PinFormatError):
            await pairing.connect_by_pin(pin, "B")

        store.select.assert_not_called()
        store.update_where.assert_not_called()

    @pytest.mark.asyncio
    async def test_concurrent_guests_single_winner(self, clock):
        store = InterleavingStore(clock=clock)
        pairing = PairingManager(store)
        await pairing.initiate_connection("c1", "A")
        pin = await pairing.issue_pin("c1", "A")

        results = await asyncio.gather(
            *[pairing.connect_by_pin(pin, f"G{i}") for i in range(5)],
            return_exceptions=True,
        )
        await store.close()

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert all(isinstance(e, AlreadyConnectedError) for e in losers)
        assert len(losers) == 4


class TestObserveConnection:
    """Tests for the host's view of its record."""

    @pytest.mark.asyncio
    async def test_emits_connected_update(self, pairing):
        await pairing.initiate_connection("c1", "A")

        async with pairing.observe_connection("c1") as feed:
            await pairing.connect_by_qr("c1", "A", "B")
            record = await asyncio.wait_for(feed.get(), 1)

        assert record.is_connected
        assert record.peer_of("A") == "B"

    @pytest.mark.asyncio
    async def test_ignores_other_connections(self, pairing):
        await pairing.initiate_connection("c1", "A")
        await pairing.initiate_connection("c2", "X")

        async with pairing.observe_connection("c1") as feed:
            await pairing.connect_by_qr("c2", "X", "Y")
            await pairing.connect_by_qr("c1", "A", "B")
            record = await asyncio.wait_for(feed.get(), 1)

        assert record.connection_id == "c1"


class TestResolvePeer:
    """Tests for peer resolution."""

    @pytest.mark.asyncio
    async def test_both_sides_resolve(self, pairing):
        await pairing.initiate_connection("c1", "A")
        await pairing.connect_by_qr("c1", "A", "B")

        assert await pairing.resolve_peer("c1", "A") == "B"
        assert await pairing.resolve_peer("c1", "B") == "A"

    @pytest.mark.asyncio
    async def test_pending_has_no_peer(self, pairing):
        await pairing.initiate_connection("c1", "A")
        with pytest.raises(NotFoundError):
            await pairing.resolve_peer("c1", "A")

    @pytest.mark.asyncio
    async def test_stranger_has_no_peer(self, pairing):
        await pairing.initiate_connection("c1", "A")
        await pairing.connect_by_qr("c1", "A", "B")
        with pytest.raises(NotFoundError):
            await pairing.resolve_peer("c1", "C")


class TestScenarios:
    """Whole pairing flows between devices sharing a store."""

    @pytest.mark.asyncio
    async def test_qr_pairing_notifies_host(self, pairing):
        await pairing.initiate_connection("c1", "A")
        feed = await pairing.observe_connection("c1").start()

        await pairing.connect_by_qr("c1", "A", "B")
        update = await asyncio.wait_for(feed.get(), 1)
        feed.cancel()

        assert update.status == ConnectionStatus.CONNECTED
        assert update.guest_device_id == "B"

    @pytest.mark.asyncio
    async def test_pin_pairing_then_third_device_rejected(self, pairing):
        await pairing.initiate_connection("c2", "A")
        with patch("pairlink.codes.generate_pin", return_value="4821"):
            pin = await pairing.issue_pin("c2", "A")
        assert pin == "4821"

        record = await pairing.connect_by_pin("4821", "B")
        assert record.pin_code is None

        with pytest.raises(NotFoundError):
            await pairing.connect_by_pin("4821", "C")
