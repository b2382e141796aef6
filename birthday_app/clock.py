from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import NamedTuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)


class LocalTime(NamedTuple):
    date: date
    hour: int


def resolve_zone(timezone_id: str) -> ZoneInfo:
    try:
        return ZoneInfo(timezone_id)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, falling back to UTC", timezone_id)
        return ZoneInfo("UTC")


def is_valid_timezone(timezone_id: str) -> bool:
    if not timezone_id:
        return False
    try:
        ZoneInfo(timezone_id)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


class Clock:
    """Current instant plus its projection onto a user's local calendar."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def local_time_at(self, instant: datetime, timezone_id: str) -> LocalTime:
        local = instant.astimezone(resolve_zone(timezone_id))
        return LocalTime(local.date(), local.hour)

    def now_local(self, timezone_id: str) -> LocalTime:
        return self.local_time_at(self.now(), timezone_id)


class FrozenClock(Clock):
    def __init__(self, instant: datetime) -> None:
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        self.instant = instant

    def now(self) -> datetime:
        return self.instant

    def set(self, instant: datetime) -> None:
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        self.instant = instant
