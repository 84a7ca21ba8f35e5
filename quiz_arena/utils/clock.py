"""Wall-clock helper shared by services that stamp times."""

from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how the store persists datetimes."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
