"""
타임존 유틸리티

원장의 모든 시각은 UTC(timezone-aware)로 저장/비교합니다.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """현재 UTC 시간을 반환합니다."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """datetime을 UTC aware 값으로 정규화합니다.

    naive datetime은 UTC로 가정합니다 (SQLite는 tzinfo 없이 읽어옴).
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
