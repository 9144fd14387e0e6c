"""Per-session device identity."""

import secrets

# 21 random bytes -> 28 URL-safe characters
DEVICE_ID_BYTES = 21


def new_device_identity() -> str:
    """Generate an unguessable device identifier.

    Called once per application session and held in memory only.
    Uniqueness is probabilistic; collisions are not detected.
    """
    return secrets.token_urlsafe(DEVICE_ID_BYTES)
