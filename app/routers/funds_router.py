# app/routers/funds_router.py

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.security import get_current_user
from app.models.user import User
from app.schemas.payment_schema import (
    PayPalOrderCreate, PayPalCapture, PayPalOrderOut, WithdrawRequest, FundsResultOut
)
from app.services.funds_service import FundsService

router = APIRouter(
    prefix="/funds",
    tags=["Funds"]
)

def get_funds_service(db: AsyncSession = Depends(get_db)) -> FundsService:
    return FundsService(db)

@router.post(
    "/paypal/order",
    response_model=PayPalOrderOut,
    status_code=status.HTTP_201_CREATED,
    summary="建立 PayPal 儲值訂單"
)
async def api_create_paypal_order(
    data: PayPalOrderCreate,
    service: FundsService = Depends(get_funds_service),
    current_user: User = Depends(get_current_user)
):
    """
    回傳 PayPal `approval_url`，使用者付款完成後再呼叫 `/funds/paypal/capture`
    """
    payment, order = await service.create_paypal_order(current_user, data.amount)
    approval_url = next(
        (link.get("href") for link in order.get("links", []) if link.get("rel") in ("approve", "payer-action")),
        None
    )
    return {
        "order_id": order["order_id"],
        "status": order.get("status"),
        "approval_url": approval_url,
        "payment": payment,
    }

@router.post("/paypal/capture", response_model=FundsResultOut, summary="確認 PayPal 付款並入帳")
async def api_capture_paypal_order(
    data: PayPalCapture,
    service: FundsService = Depends(get_funds_service),
    current_user: User = Depends(get_current_user)
):
    payment, balance = await service.capture_paypal_order(current_user, data.order_id)
    return {"message": "儲值成功", "balance": balance, "payment": payment}

@router.post("/withdraw", response_model=FundsResultOut, summary="提領至 PayPal")
async def api_withdraw(
    data: WithdrawRequest,
    service: FundsService = Depends(get_funds_service),
    current_user: User = Depends(get_current_user)
):
    """
    最低提領金額 $10。PayPal 失敗時金額會退回餘額並回傳 502。
    """
    payment, balance = await service.withdraw(current_user, data.amount, data.paypal_email)
    return {"message": "提領申請已送出", "balance": balance, "payment": payment}
