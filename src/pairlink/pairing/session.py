"""Local pairing state of one device.

Tracks where this device is in the pairing lifecycle. The store record is
the authority for who the peer is; this only mirrors it for the device.
"""

from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional

from pairlink.errors import InvalidTransitionError


class SessionState(Enum):
    """Device session states."""

    IDLE = auto()
    INITIATING = auto()
    PENDING = auto()
    CONNECTED = auto()
    FAILED = auto()
    CLOSED = auto()


class Role(Enum):
    HOST = "host"
    GUEST = "guest"


VALID_TRANSITIONS = {
    SessionState.IDLE: {SessionState.INITIATING, SessionState.CONNECTED},
    SessionState.INITIATING: {SessionState.PENDING, SessionState.FAILED},
    # PENDING -> PENDING when a new PIN is issued
    SessionState.PENDING: {
        SessionState.PENDING,
        SessionState.CONNECTED,
        SessionState.FAILED,
    },
    SessionState.CONNECTED: set(),
    SessionState.FAILED: {SessionState.IDLE},
    SessionState.CLOSED: set(),
}


@dataclass
class PairingSession:
    """Pairing progress of a single device.

    Attributes:
        device_id: This device's identity for the application session.
        state: Current state.
        role: Host or guest, once known.
        connection_id: Connection this device created or joined.
        peer_device_id: Resolved peer once connected.
        pin_code: Last PIN issued by this device as host.
    """

    device_id: str
    state: SessionState = SessionState.IDLE
    role: Optional[Role] = None
    connection_id: Optional[str] = None
    peer_device_id: Optional[str] = None
    pin_code: Optional[str] = None

    @property
    def is_connected(self) -> bool:
        return self.state == SessionState.CONNECTED

    def transition_to(self, new_state: SessionState) -> None:
        """Transition to a new state with validation.

        Any state may move to CLOSED.

        Raises:
            InvalidTransitionError: If transition is not valid from current state.
        """
        if new_state == SessionState.CLOSED:
            self.state = new_state
            return

        if new_state not in VALID_TRANSITIONS.get(self.state, set()):
            raise InvalidTransitionError(
                f"Invalid transition: {self.state} -> {new_state}"
            )

        self.state = new_state

    def reset(self) -> None:
        """Return from FAILED to IDLE, forgetting the last connection."""
        self.transition_to(SessionState.IDLE)
        self.role = None
        self.connection_id = None
        self.peer_device_id = None
        self.pin_code = None
