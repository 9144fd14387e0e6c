"""Tests for device identity generation."""

import base64

from pairlink.identity import DEVICE_ID_BYTES, new_device_identity


class TestNewDeviceIdentity:
    """Tests for new_device_identity."""

    def test_is_url_safe(self):
        """Identity only uses URL-safe characters."""
        device_id = new_device_identity()
        assert all(c.isalnum() or c in "-_" for c in device_id)

    def test_carries_at_least_21_bytes(self):
        """Identity decodes to at least 21 random bytes."""
        device_id = new_device_identity()
        raw = base64.urlsafe_b64decode(device_id + "=" * (-len(device_id) % 4))
        assert len(raw) >= 21
        assert DEVICE_ID_BYTES >= 21

    def test_unique(self):
        """Each call generates a different identity."""
        ids = {new_device_identity() for _ in range(100)}
        assert len(ids) == 100
