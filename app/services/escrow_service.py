# app/services/escrow_service.py
# 託管款項狀態機：held -> released / refunded，held 期間可調整金額

import logging
import uuid
from decimal import Decimal
from typing import Optional, Tuple
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import InvalidStateError, InvalidArgumentError
from app.models.contract import Contract
from app.models.payment import Payment
from app.repositories.payment_repo import PaymentRepository
from app.services.ledger_service import LedgerService
from app.utils.clock import utcnow
from app.utils.money import compute_escrow_amounts, to_money

logger = logging.getLogger(__name__)


def generate_transaction_id(prefix: str = "TXN") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:20].upper()}"


class EscrowService:
    """
    所有狀態轉換都以「目前為 held」作為條件式更新，
    同一筆託管不可能被撥款或退款兩次。這裡不 commit。
    """

    def __init__(self, db: AsyncSession, ledger: Optional[LedgerService] = None):
        self.db = db
        self.payment_repo = PaymentRepository(db)
        self.ledger = ledger or LedgerService(db)

    @property
    def fee_rate(self) -> Decimal:
        return Decimal(str(settings.PLATFORM_FEE_RATE))

    async def get_held_escrow(self, contract_id: str) -> Optional[Payment]:
        return await self.payment_repo.get_held_escrow(contract_id)

    async def open_escrow(self, contract: Contract, amount: Decimal, fee_rate: Optional[Decimal] = None) -> Payment:
        """
        建立 'held' 託管紀錄 (同一合約同時只能有一筆)
        呼叫端負責在同一個交易中先向雇主扣款
        """
        existing = await self.payment_repo.get_held_escrow(contract.contract_id)
        if existing:
            raise InvalidStateError("此合約已有託管中的款項", current_status=existing.status)

        amounts = compute_escrow_amounts(amount, self.fee_rate if fee_rate is None else fee_rate)
        if amounts["amount"] <= 0:
            raise InvalidArgumentError("託管金額必須大於 0", fields=["amount"])

        payment = Payment(
            contract_id=contract.contract_id,
            payer_id=contract.client_id,
            payee_id=contract.freelancer_id,
            currency=settings.CURRENCY,
            payment_method='balance',
            status='held',
            type='escrow',
            is_escrow=True,
            held_for_contract_id=contract.contract_id,
            transaction_id=generate_transaction_id("ESC"),
            description=f"Escrow for contract {contract.contract_id}",
            held_at=utcnow(),
            **amounts
        )
        try:
            await self.payment_repo.create_payment(payment)
        except IntegrityError:
            # 另一個請求搶先建立了 held 託管，整個交易 (含扣款) 作廢
            await self.db.rollback()
            raise InvalidStateError("此合約已有託管中的款項", current_status="held")

        logger.info(
            f"🔒 Escrow opened: contract={contract.contract_id} amount={amounts['amount']} "
            f"fee={amounts['platform_fee']} net={amounts['net_amount']}"
        )
        return payment

    async def adjust_escrow(self, contract_id: str, delta: Decimal) -> Payment:
        """
        調整託管金額 (只在 held 期間)，重新計算平台費 / 淨額 / 總額。
        呼叫端負責對應的雇主扣款 (增加) 或退款 (減少)。
        """
        escrow = await self.payment_repo.get_held_escrow(contract_id)
        if escrow is None:
            raise InvalidStateError("此合約沒有託管中的款項")
        return await self._set_amount(escrow, to_money(escrow.amount) + to_money(delta))

    async def _set_amount(self, escrow: Payment, new_amount: Decimal) -> Payment:
        if new_amount <= 0:
            raise InvalidArgumentError("託管金額必須大於 0", fields=["amount"])
        old_amount = to_money(escrow.amount)
        amounts = compute_escrow_amounts(new_amount, self.fee_rate)

        updated = await self.payment_repo.adjust_held_amounts(
            escrow.payment_id, expected_amount=old_amount, **amounts
        )
        if not updated:
            raise InvalidStateError("託管款項已被其他操作變更，請重新整理後再試")

        logger.info(
            f"🔧 Escrow adjusted: payment={escrow.payment_id} {old_amount} -> {amounts['amount']} "
            f"fee={amounts['platform_fee']}"
        )
        return await self.payment_repo.get_payment_by_id(escrow.payment_id)

    async def release_escrow(self, contract_id: str) -> Tuple[Payment, Decimal]:
        """
        撥款給工作者：freelancerAmount = amount - platformFee
        只有目前為 held 才會成功，第二次呼叫會得到 InvalidStateError
        """
        escrow = await self.payment_repo.get_held_escrow(contract_id)
        if escrow is None:
            latest = await self.payment_repo.get_latest_escrow(contract_id)
            raise InvalidStateError(
                "此合約沒有託管中的款項可撥款",
                current_status=latest.status if latest else None
            )

        freelancer_amount = to_money(escrow.amount) - to_money(escrow.platform_fee)
        now = utcnow()
        released = await self.payment_repo.transition_status(
            escrow.payment_id, 'held', 'released',
            held_for_contract_id=None,
            net_amount=freelancer_amount,
            released_at=now,
            completed_at=now,
            transaction_id=generate_transaction_id("REL"),
        )
        if not released:
            raise InvalidStateError("託管款項已被處理", current_status="released")

        await self.ledger.credit(escrow.payee_id, freelancer_amount, count_as_earnings=True)
        logger.info(
            f"✅ Escrow released: contract={contract_id} freelancer={escrow.payee_id} "
            f"amount={freelancer_amount} fee={escrow.platform_fee}"
        )
        return await self.payment_repo.get_payment_by_id(escrow.payment_id), freelancer_amount

    async def refund_escrow(self, contract_id: str, reason: str) -> Tuple[Payment, Decimal]:
        """
        退款給雇主 (全額退回託管金額)
        """
        escrow = await self.payment_repo.get_held_escrow(contract_id)
        if escrow is None:
            latest = await self.payment_repo.get_latest_escrow(contract_id)
            raise InvalidStateError(
                "此合約沒有託管中的款項可退款",
                current_status=latest.status if latest else None
            )

        refund_amount = to_money(escrow.amount)
        refunded = await self.payment_repo.transition_status(
            escrow.payment_id, 'held', 'refunded',
            held_for_contract_id=None,
            refund_reason=reason,
            refunded_at=utcnow(),
        )
        if not refunded:
            raise InvalidStateError("託管款項已被處理", current_status="refunded")

        await self.ledger.credit(escrow.payer_id, refund_amount)
        logger.info(f"↩️ Escrow refunded: contract={contract_id} client={escrow.payer_id} amount={refund_amount}")
        return await self.payment_repo.get_payment_by_id(escrow.payment_id), refund_amount
