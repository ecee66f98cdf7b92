"""
타임존 유틸리티

DB 에는 UTC 로 저장합니다. SQLite 처럼 tzinfo 를 잃어버리는 드라이버가 있어
비교 전에 항상 as_utc() 로 정규화합니다.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    """현재 UTC 시간을 반환합니다."""
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """naive datetime 은 UTC 로 간주하여 tz-aware 로 변환합니다."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def minutes_from_now(minutes: int) -> datetime:
    return utc_now() + timedelta(minutes=minutes)


def is_past(dt: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """dt 가 지났는지 여부 (None 이면 False)"""
    if dt is None:
        return False
    return as_utc(dt) <= (now or utc_now())
