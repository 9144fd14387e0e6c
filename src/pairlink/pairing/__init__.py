"""Pairing module for pairlink.

Provides the connection pairing flow including:
- Pairing manager (QR and PIN paths, race handling)
- QR payload encoding and rendering
- Local device pairing state
- Expiry of stale pending connections
"""

from .pairing_manager import PairingManager
from .qr_generator import (
    PairingPayload,
    QrRenderer,
    decode_pairing_payload,
    encode_connection_json,
    encode_connection_url,
)
from .reaper import PendingReaper
from .session import PairingSession, Role, SessionState

__all__ = [
    "PairingManager",
    "PairingPayload",
    "PairingSession",
    "PendingReaper",
    "QrRenderer",
    "Role",
    "SessionState",
    "decode_pairing_payload",
    "encode_connection_json",
    "encode_connection_url",
]
