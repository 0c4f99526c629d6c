"""UTC clock helpers.

Timestamps are stored as naive UTC datetimes throughout.
"""

from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
