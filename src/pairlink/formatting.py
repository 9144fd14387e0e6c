"""Formatting utilities for CLI output."""

from datetime import datetime, timezone

from pairlink.models import ContentEntry


def format_time_ago(timestamp_str: str | None, now: datetime | None = None) -> str:
    """Format ISO timestamp as relative time (e.g., '2 hours ago').

    Args:
        timestamp_str: ISO 8601 timestamp string (with or without 'Z' suffix).
        now: Reference time; defaults to the current UTC time.

    Returns:
        Human-readable relative time string like "2 hours ago" or "Never".
    """
    if not timestamp_str:
        return "Never"

    ts = datetime.fromisoformat(timestamp_str.replace("Z", "+00:00"))
    now = now or datetime.now(timezone.utc)
    seconds = (now - ts).total_seconds()

    if seconds < 60:
        return "Just now"
    elif seconds < 3600:
        minutes = int(seconds / 60)
        return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    elif seconds < 86400:
        hours = int(seconds / 3600)
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    else:
        days = int(seconds / 86400)
        return f"{days} day{'s' if days != 1 else ''} ago"


def format_entry(entry: ContentEntry, device_id: str | None = None) -> str:
    """One history line: time, direction and content.

    Entries sent by device_id are marked "me", others show the sender's
    short id.
    """
    clock = (entry.created_at or "")[11:19] or "--:--:--"
    if device_id is not None and entry.sender_device_id == device_id:
        who = "me"
    else:
        who = entry.sender_device_id[:8]
    return f"[{clock}] {who:<8} {entry.content}"
