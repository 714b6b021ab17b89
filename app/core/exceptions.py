# app/core/exceptions.py
# 業務錯誤分類。Service 層直接 raise，由 main.py 註冊的 handler 統一轉成 JSON 回應。
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import status


class AppError(Exception):
    """所有業務錯誤的基底類別"""
    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = {k: v for k, v in extra.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "message": self.message}
        for key, value in self.extra.items():
            body[key] = float(value) if isinstance(value, Decimal) else value
        return body


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND


class ForbiddenError(AppError):
    status_code = status.HTTP_403_FORBIDDEN


class InvalidStateError(AppError):
    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(message, currentStatus=current_status)


class InvalidArgumentError(AppError):
    def __init__(self, message: str, fields: Optional[List[str]] = None):
        super().__init__(message, fields=fields)


class InsufficientFundsError(AppError):
    """餘額不足。回應內附上所需金額、目前餘額與差額，讓前端可以引導儲值。"""

    def __init__(self, required_amount: Decimal, current_balance: Decimal, message: Optional[str] = None):
        shortfall = max(Decimal(required_amount) - Decimal(current_balance), Decimal("0"))
        super().__init__(
            message or f"餘額不足，還需要 ${shortfall:.2f} 才能完成此操作，請先儲值",
            requiredAmount=required_amount,
            currentBalance=current_balance,
            shortfall=shortfall,
        )
        self.required_amount = Decimal(required_amount)
        self.current_balance = Decimal(current_balance)
        self.shortfall = shortfall


class DownstreamFailure(AppError):
    """外部服務 (PayPal、Email) 呼叫失敗"""
    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message, provider=provider)
