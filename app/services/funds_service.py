# app/services/funds_service.py
# 儲值 (PayPal order / capture) 與提領 (PayPal payout)

import logging
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    NotFoundError, ForbiddenError, InvalidStateError, InvalidArgumentError, DownstreamFailure
)
from app.models.payment import Payment
from app.models.user import User
from app.repositories.payment_repo import PaymentRepository
from app.services import email_service
from app.services.email_service import Mailer, ResendMailer
from app.services.escrow_service import generate_transaction_id
from app.services.ledger_service import LedgerService
from app.services.paypal_gateway import PaymentGateway, PayPalGateway
from app.utils.clock import utcnow
from app.utils.money import to_money

logger = logging.getLogger(__name__)


class FundsService:
    def __init__(
        self,
        db: AsyncSession,
        gateway: Optional[PaymentGateway] = None,
        mailer: Optional[Mailer] = None,
    ):
        self.db = db
        self.gateway = gateway or PayPalGateway()
        self.mailer = mailer or ResendMailer()
        self.payment_repo = PaymentRepository(db)
        self.ledger = LedgerService(db)

    async def create_paypal_order(self, user: User, amount: Decimal) -> Tuple[Payment, Dict[str, Any]]:
        """
        建立 PayPal 訂單，並記錄一筆 pending 的儲值紀錄 (以 order_id 對應)
        """
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidArgumentError("儲值金額必須大於 0", fields=["amount"])

        order = await self.gateway.create_order(amount, settings.CURRENCY)
        if not order.get("success"):
            raise DownstreamFailure(f"建立 PayPal 訂單失敗: {order.get('error')}", provider="paypal")

        payment = Payment(
            payer_id=user.user_id,
            payee_id=user.user_id,
            amount=amount,
            platform_fee=Decimal("0.00"),
            net_amount=amount,
            total_amount=amount,
            currency=settings.CURRENCY,
            payment_method='paypal',
            status='pending',
            type='payment',
            is_escrow=False,
            paypal_order_id=order["order_id"],
            transaction_id=generate_transaction_id("DEP"),
            description="PayPal 儲值",
        )
        try:
            await self.payment_repo.create_payment(payment)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"🧾 PayPal order recorded: order={order['order_id']} user={user.user_id} amount={amount}")
        return payment, order

    async def capture_paypal_order(self, user: User, order_id: str) -> Tuple[Payment, Decimal]:
        """
        capture 訂單並入帳。pending -> completed 的條件式更新與入帳在同一個交易，
        重複 capture 只會得到 InvalidStateError，不會重複入帳。
        """
        payment = await self.payment_repo.get_by_paypal_order_id(order_id)
        if not payment:
            raise NotFoundError("找不到此 PayPal 訂單的儲值紀錄")
        if payment.payer_id != user.user_id:
            raise ForbiddenError("這不是你的儲值訂單")
        if payment.status != 'pending':
            raise InvalidStateError("此訂單已處理過", current_status=payment.status)

        capture = await self.gateway.capture_order(order_id)
        if not capture.get("success"):
            raise DownstreamFailure(f"PayPal 付款確認失敗: {capture.get('error')}", provider="paypal")
        if capture.get("status") not in (None, "COMPLETED"):
            raise DownstreamFailure(f"PayPal 付款尚未完成 (狀態: {capture.get('status')})", provider="paypal")

        try:
            claimed = await self.payment_repo.transition_status(
                payment.payment_id, 'pending', 'completed',
                completed_at=utcnow(), gateway_response=capture,
            )
            if not claimed:
                current = await self.payment_repo.get_payment_by_id(payment.payment_id)
                raise InvalidStateError("此訂單已處理過", current_status=current.status if current else None)
            await self.ledger.credit(user.user_id, payment.amount)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        balance = await self.ledger.get_balance(user.user_id)
        logger.info(f"✅ Funds added: user={user.user_id} amount={payment.amount} balance={balance}")
        return await self.payment_repo.get_payment_by_id(payment.payment_id), balance

    async def withdraw(self, user: User, amount: Decimal, paypal_email: Optional[str] = None) -> Tuple[Payment, Decimal]:
        """
        提領：先以條件式扣款扣除餘額並記錄 pending 提領，再呼叫 PayPal payout。
        payout 失敗時把金額加回、標記 failed，並 raise DownstreamFailure。
        """
        amount = to_money(amount)
        minimum = to_money(settings.MIN_WITHDRAWAL_AMOUNT)
        if amount < minimum:
            raise InvalidArgumentError(f"最低提領金額為 ${minimum}", fields=["amount"])
        receiver = paypal_email or user.paypal_email
        if not receiver:
            raise InvalidArgumentError("請先設定 PayPal 帳號 Email", fields=["paypal_email"])

        withdrawal = Payment(
            payer_id=user.user_id,
            amount=amount,
            platform_fee=Decimal("0.00"),
            net_amount=amount,
            total_amount=amount,
            currency=settings.CURRENCY,
            payment_method='paypal',
            status='pending',
            type='withdrawal',
            is_escrow=False,
            paypal_email=receiver,
            transaction_id=generate_transaction_id("WD"),
            description=f"提領至 PayPal: {receiver}",
        )
        try:
            await self.ledger.debit(user.user_id, amount)
            await self.payment_repo.create_payment(withdrawal)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        user_id = user.user_id
        payment_id = withdrawal.payment_id
        payout = await self.gateway.create_payout(receiver, amount, settings.CURRENCY, "Freelancing Platform Withdrawal")

        if not payout.get("success"):
            logger.error(f"❌ Withdrawal payout failed, refunding balance: user={user.user_id} amount={amount}")
            try:
                await self.ledger.credit(user.user_id, amount)
                await self.payment_repo.transition_status(
                    withdrawal.payment_id, 'pending', 'failed',
                    failure_reason=payout.get("error"), gateway_response=payout,
                )
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                logger.error(f"提領失敗後退回餘額失敗，需要人工對帳: payment={payment_id} user={user_id}", exc_info=True)
                raise
            raise DownstreamFailure(f"PayPal 提領失敗: {payout.get('error')}", provider="paypal")

        try:
            await self.payment_repo.transition_status(
                withdrawal.payment_id, 'pending', 'completed',
                completed_at=utcnow(), paypal_batch_id=payout.get("batch_id"), gateway_response=payout,
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.error(f"提領已送出但狀態更新失敗，需要人工對帳: payment={payment_id} user={user_id}", exc_info=True)
            raise

        balance = await self.ledger.get_balance(user.user_id)
        logger.info(f"💸 Withdrawal completed: user={user.user_id} amount={amount} batch={payout.get('batch_id')}")

        try:
            template = email_service.withdrawal_email(user.display_name, amount, receiver)
            await self.mailer.send(user.email, template["subject"], template["html"])
        except Exception as e:
            logger.warning(f"提領通知信寄送失敗: {e}")

        return await self.payment_repo.get_payment_by_id(withdrawal.payment_id), balance
