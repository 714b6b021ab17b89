# app/utils/response_time.py
# 回覆時間統計 (累積移動平均)

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Sequence, Tuple

# (sender_id, created_at)
MessageStamp = Tuple[str, datetime]


def calculate_reply_delta(
    recent_messages: Sequence[MessageStamp],
    sender_id: str,
    min_minutes: float = 1,
    max_minutes: float = 1440,
) -> Optional[float]:
    """
    計算本次發送相對於「對方上一則訊息」的回覆間隔 (分鐘)。

    recent_messages: 此對話中最新的訊息，由新到舊排列 (至少取兩則)。
    回傳 None 代表此次不計入統計：
    - 訊息不足兩則
    - 前一則訊息也是自己發的 (不是回覆別人)
    - 間隔小於 min_minutes 或大於 max_minutes (離群值)
    """
    if len(recent_messages) < 2:
        return None

    (_, current_at), (previous_sender, previous_at) = recent_messages[0], recent_messages[1]
    if previous_sender == sender_id:
        return None

    delta = (current_at - previous_at).total_seconds() / 60
    if delta < min_minutes or delta > max_minutes:
        return None
    return delta


def update_rolling_average(old_avg: int, old_count: int, delta_minutes: float) -> Tuple[int, int]:
    """
    累積移動平均：newAvg = round(((oldAvg * oldCount) + delta) / (oldCount + 1))
    (四捨五入採 half-up，不使用 Python 內建的 banker's rounding)
    """
    old_avg = old_avg or 0
    old_count = old_count or 0
    raw = (Decimal(old_avg) * old_count + Decimal(str(delta_minutes))) / (old_count + 1)
    new_avg = int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return new_avg, old_count + 1
