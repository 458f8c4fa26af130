"""Clock helpers; everything stored or stamped is timezone-aware UTC."""

from datetime import UTC, datetime


def utc_now() -> datetime:
    return datetime.now(UTC)


def epoch_millis(moment: datetime | None = None) -> int:
    """Milliseconds since the epoch for ``moment`` (default: now)."""
    return int((moment or utc_now()).timestamp() * 1000)
