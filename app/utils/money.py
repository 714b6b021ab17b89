# app/utils/money.py
# 金額運算輔助函式：統一使用 Decimal，四捨五入到小數點後兩位
from decimal import Decimal, ROUND_HALF_UP
from typing import Union

CENT = Decimal("0.01")

Number = Union[Decimal, float, int, str]


def to_money(value: Number) -> Decimal:
    """將任意數值轉成兩位小數的 Decimal (float 先轉字串，避免二進位誤差)"""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def compute_escrow_amounts(amount: Number, fee_rate: Number) -> dict:
    """
    由託管金額與費率推算平台費、淨額與總額。
    netAmount = amount - platformFee, totalAmount = amount + platformFee
    """
    amount = to_money(amount)
    platform_fee = to_money(amount * Decimal(str(fee_rate)))
    return {
        "amount": amount,
        "platform_fee": platform_fee,
        "net_amount": amount - platform_fee,
        "total_amount": amount + platform_fee,
    }
