"""Base exceptions for pairlink."""

# Shown to a joining device for every pairing failure so that a guesser
# cannot tell a stale code from a live one.
GENERIC_CONNECT_FAILURE = "Could not connect: invalid or expired code"


class PairlinkError(Exception):
    """Base exception for all pairlink errors."""

    pass


class StoreUnavailableError(PairlinkError):
    """Transport or persistence failure talking to the store."""

    pass


class ConflictError(PairlinkError):
    """Primary key already exists, or a unique code could not be issued."""

    pass


class NotFoundError(PairlinkError):
    """No matching record (pending connection, peer, or PIN)."""

    pass


class AlreadyConnectedError(PairlinkError):
    """Another guest won the race to pair with this connection."""

    pass


class PinFormatError(PairlinkError, ValueError):
    """PIN is not exactly four ASCII digits."""

    pass


class InvalidPayloadError(NotFoundError):
    """QR payload could not be decoded into a connection reference."""

    pass


class ContentError(PairlinkError, ValueError):
    """Content body is empty or too large."""

    pass


class InvalidTransitionError(PairlinkError, ValueError):
    """Device session state transition is not allowed."""

    pass


class InvalidIdentifierError(PairlinkError, ValueError):
    """Device or connection id is not a URL-safe token."""

    pass
