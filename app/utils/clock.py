# app/utils/clock.py
from datetime import datetime, timezone


def utcnow() -> datetime:
    """目前的 UTC 時間 (naive，與資料庫中的 TIMESTAMP 欄位一致)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)
