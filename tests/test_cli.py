"""Tests for CLI module."""

import asyncio
import json
from unittest.mock import patch

import pytest
import yaml
from click.testing import CliRunner

from pairlink.cli import main
from pairlink.client import DeviceSession
from pairlink.errors import GENERIC_CONNECT_FAILURE
from pairlink.store.memory import MemoryStore


@pytest.fixture
def runner():
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def store_file(tmp_path):
    return tmp_path / "store.json"


@pytest.fixture
def config_file(tmp_path, store_file):
    """Config selecting a JSON store under tmp_path."""
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.dump({"store": {"backend": "json", "path": str(store_file)}})
    )
    return path


def write_store(path, connections, content=()):
    path.write_text(
        json.dumps(
            {
                "version": 1,
                "tables": {
                    "connections": list(connections),
                    "shared_content": list(content),
                },
                "sequences": {"connections": 0, "shared_content": len(content)},
                "last_timestamp": None,
            }
        )
    )


def connection(connection_id="c1", status="connected", guest="B", created_at=None):
    return {
        "connection_id": connection_id,
        "host_device_id": "A",
        "guest_device_id": guest,
        "pin_code": None,
        "status": status,
        "created_at": created_at or "2025-01-01T12:00:00.000000Z",
    }


class TestCLIHelp:
    """Test CLI help output."""

    def test_cli_help(self, runner):
        """pairlink --help lists commands."""
        result = runner.invoke(main, ["--help"])

        assert result.exit_code == 0
        for command in ["host", "join", "send", "history", "relay", "reap", "qr"]:
            assert command in result.output

    def test_version_command(self, runner):
        result = runner.invoke(main, ["version"])

        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_config_option_accepted(self, runner, config_file):
        result = runner.invoke(main, ["--config", str(config_file), "version"])
        assert result.exit_code == 0


class TestQrCommand:
    """Test qr command."""

    def test_prints_qr(self, runner):
        result = runner.invoke(main, ["qr", "https://x.test/"])

        assert result.exit_code == 0
        assert len(result.output.splitlines()) > 10

    def test_saves_png(self, runner, tmp_path):
        output = tmp_path / "qr.png"
        result = runner.invoke(main, ["qr", "hello", "-o", str(output)])

        assert result.exit_code == 0
        assert "QR code saved to" in result.output
        assert output.read_bytes().startswith(b"\x89PNG")


class TestPairingCommands:
    """Test host and join argument handling."""

    def test_host_requires_remote_backend(self, runner, config_file):
        result = runner.invoke(main, ["--config", str(config_file), "host"])

        assert result.exit_code == 1
        assert "remote store backend" in result.output

    def test_join_requires_one_code(self, runner, tmp_path):
        config_file = tmp_path / "remote.yaml"
        config_file.write_text(yaml.dump({"store": {"backend": "remote"}}))

        neither = runner.invoke(main, ["--config", str(config_file), "join"])
        both = runner.invoke(
            main, ["--config", str(config_file), "join", "--pin", "1234", "--url", "x"]
        )

        assert neither.exit_code == 1
        assert both.exit_code == 1
        assert "exactly one" in both.output

    @pytest.mark.parametrize(
        "args",
        [
            ["--pin", "1234"],
            ["--url", "https://x.test/?connectionId=c1&hostDeviceId=A&action=connect"],
            ["--url", "not a code"],
        ],
    )
    def test_join_failures_look_the_same(self, runner, tmp_path, args):
        """Unknown PINs, stale links and garbage all get one message."""
        config_file = tmp_path / "remote.yaml"
        config_file.write_text(yaml.dump({"store": {"backend": "remote"}}))

        async def fake_open_store(config):
            return MemoryStore()

        with patch("pairlink.store.open_store", new=fake_open_store):
            result = runner.invoke(main, ["--config", str(config_file), "join", *args])

        assert result.exit_code == 1
        assert GENERIC_CONNECT_FAILURE in result.output

    def test_host_prints_content_sent_on_join(self, runner, tmp_path):
        """Text the guest sends the moment it joins shows up on the host."""
        config_file = tmp_path / "remote.yaml"
        config_file.write_text(yaml.dump({"store": {"backend": "remote"}}))
        stores = []
        original_wait = DeviceSession.wait_connected

        async def fake_open_store(config):
            stores.append(MemoryStore())
            return stores[-1]

        async def join_then_wait(session, timeout=None):
            store = stores[-1]
            guest = DeviceSession(store)
            await guest.join_by_qr(session.pairing_payload())
            await guest.send("hello from the guest")
            peer = await original_wait(session, timeout=timeout)

            async def hang_up():
                await asyncio.sleep(0.05)
                await store.close()

            asyncio.get_running_loop().create_task(hang_up())
            return peer

        with patch("pairlink.store.open_store", new=fake_open_store), patch.object(
            DeviceSession, "wait_connected", new=join_then_wait
        ):
            result = runner.invoke(main, ["--config", str(config_file), "host"])

        assert result.exit_code == 0
        assert "Connected!" in result.output
        assert "hello from the guest" in result.output

    def test_join_rejects_malformed_pin(self, runner, tmp_path):
        config_file = tmp_path / "remote.yaml"
        config_file.write_text(yaml.dump({"store": {"backend": "remote"}}))

        async def fake_open_store(config):
            return MemoryStore()

        with patch("pairlink.store.open_store", new=fake_open_store):
            result = runner.invoke(
                main, ["--config", str(config_file), "join", "--pin", "12"]
            )

        assert result.exit_code == 1
        assert "4 digits" in result.output


class TestSendAndHistory:
    """Test send and history against a JSON store."""

    def test_send_then_history(self, runner, config_file, store_file):
        write_store(store_file, [connection()])

        sent = runner.invoke(
            main, ["--config", str(config_file), "send", "c1", "A", "hello there"]
        )
        shown = runner.invoke(
            main, ["--config", str(config_file), "history", "c1", "--device-id", "B"]
        )

        assert sent.exit_code == 0
        assert "Message sent successfully!" in sent.output
        assert shown.exit_code == 0
        assert "connected" in shown.output
        assert "A" in shown.output
        assert "hello there" in shown.output

    def test_send_without_peer_fails(self, runner, config_file, store_file):
        write_store(store_file, [connection(status="pending", guest=None)])

        result = runner.invoke(
            main, ["--config", str(config_file), "send", "c1", "A", "hello"]
        )

        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_send_rejects_empty_body(self, runner, config_file, store_file):
        write_store(store_file, [connection()])

        result = runner.invoke(
            main, ["--config", str(config_file), "send", "c1", "A", "   "]
        )

        assert result.exit_code == 1
        assert "empty" in result.output

    def test_history_empty(self, runner, config_file, store_file):
        write_store(store_file, [connection()])

        result = runner.invoke(main, ["--config", str(config_file), "history", "c1"])

        assert result.exit_code == 0
        assert "No messages." in result.output

    def test_history_unknown_connection(self, runner, config_file, store_file):
        write_store(store_file, [])

        result = runner.invoke(main, ["--config", str(config_file), "history", "c9"])

        assert result.exit_code == 1
        assert "not found" in result.output


class TestReapCommand:
    """Test reap command."""

    def test_expires_stale_pending(self, runner, config_file, store_file):
        write_store(
            store_file,
            [
                connection("old", status="pending", guest=None),
                connection("live", status="connected"),
            ],
        )

        result = runner.invoke(main, ["--config", str(config_file), "reap"])

        assert result.exit_code == 0
        assert "Expired 1 pending connection(s)." in result.output
        data = json.loads(store_file.read_text())
        statuses = {r["connection_id"]: r["status"] for r in data["tables"]["connections"]}
        assert statuses == {"old": "expired", "live": "connected"}

    def test_refuses_remote_backend(self, runner, tmp_path):
        """Listing pending rows is not possible through the relay."""
        config_file = tmp_path / "remote.yaml"
        config_file.write_text(yaml.dump({"store": {"backend": "remote"}}))

        result = runner.invoke(main, ["--config", str(config_file), "reap"])

        assert result.exit_code == 1
        assert "relay expires pending connections itself" in result.output
