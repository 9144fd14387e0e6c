"""Pairing code generation and validation.

Two kinds of codes are produced:
- connection ids: long, URL-safe, unguessable (carried in QR payloads)
- PINs: four digits a human can type on the joining device
"""

import re
import secrets
from typing import Awaitable, Callable

from pairlink.errors import ConflictError, PinFormatError

CONNECTION_ID_BYTES = 24
PIN_LENGTH = 4
PIN_MIN = 1000
PIN_MAX = 9999

PIN_PATTERN = re.compile(r"[0-9]{4}")
TOKEN_PATTERN = re.compile(r"[A-Za-z0-9_-]+")


def new_connection_id() -> str:
    """Generate a fresh connection id (32 URL-safe chars)."""
    return secrets.token_urlsafe(CONNECTION_ID_BYTES)


def generate_pin() -> str:
    """Generate a PIN uniformly over 1000-9999."""
    return str(PIN_MIN + secrets.randbelow(PIN_MAX - PIN_MIN + 1))


def validate_pin(pin: str) -> str:
    """Check PIN format.

    Args:
        pin: Candidate PIN as entered.

    Returns:
        The PIN unchanged.

    Raises:
        PinFormatError: If the PIN is not exactly four ASCII digits.
    """
    if not isinstance(pin, str) or not PIN_PATTERN.fullmatch(pin):
        raise PinFormatError(f"PIN must be exactly {PIN_LENGTH} digits")
    return pin


def is_valid_token(value: str) -> bool:
    """Check that an id is a non-empty URL-safe token."""
    return isinstance(value, str) and bool(TOKEN_PATTERN.fullmatch(value))


async def generate_unique_pin(
    is_taken: Callable[[str], Awaitable[bool]],
    max_attempts: int = 20,
) -> str:
    """Draw PINs until one is not held by another pending connection.

    Args:
        is_taken: Async predicate reporting whether a PIN is in use.
        max_attempts: Number of draws before giving up.

    Returns:
        A PIN not currently in use.

    Raises:
        ConflictError: If every draw collided.
    """
    for _ in range(max_attempts):
        pin = generate_pin()
        if not await is_taken(pin):
            return pin
    raise ConflictError("Failed to generate unique PIN")
