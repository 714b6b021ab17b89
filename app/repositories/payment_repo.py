# app/repositories/payment_repo.py

from decimal import Decimal
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.sql.expression import or_
from typing import List, Optional

from app.models.payment import Payment


class PaymentRepository:
    """
    封裝對 'payments' 資料表的操作 (不 commit)
    """
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_payment(self, payment: Payment) -> Payment:
        self.db.add(payment)
        await self.db.flush()
        return payment

    async def get_payment_by_id(self, payment_id: str) -> Optional[Payment]:
        stmt = (
            select(Payment)
            .where(Payment.payment_id == payment_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def get_held_escrow(self, contract_id: str) -> Optional[Payment]:
        """
        取得此合約目前 'held' 的託管紀錄 (最多一筆)
        """
        stmt = (
            select(Payment)
            .where(Payment.held_for_contract_id == contract_id, Payment.status == 'held')
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def get_latest_escrow(self, contract_id: str) -> Optional[Payment]:
        stmt = (
            select(Payment)
            .where(Payment.contract_id == contract_id, Payment.is_escrow == True)
            .order_by(Payment.created_at.desc())
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def get_by_paypal_order_id(self, order_id: str) -> Optional[Payment]:
        stmt = (
            select(Payment)
            .where(Payment.paypal_order_id == order_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def list_payments_by_user(self, user_id: str, direction: Optional[str] = None) -> List[Payment]:
        if direction == "sent":
            condition = Payment.payer_id == user_id
        elif direction == "received":
            condition = Payment.payee_id == user_id
        else:
            condition = or_(Payment.payer_id == user_id, Payment.payee_id == user_id)
        stmt = select(Payment).where(condition).order_by(Payment.created_at.desc())
        result = await self.db.execute(stmt)
        return result.scalars().all()

    async def list_payments(self, status: Optional[str] = None, type_: Optional[str] = None,
                            limit: int = 50, offset: int = 0) -> List[Payment]:
        stmt = select(Payment)
        if status:
            stmt = stmt.where(Payment.status == status)
        if type_:
            stmt = stmt.where(Payment.type == type_)
        stmt = stmt.order_by(Payment.created_at.desc()).limit(limit).offset(offset)
        result = await self.db.execute(stmt)
        return result.scalars().all()

    # --- 條件式更新 ---

    async def transition_status(self, payment_id: str, from_status: str, to_status: str, **values) -> bool:
        stmt = (
            update(Payment)
            .where(Payment.payment_id == payment_id, Payment.status == from_status)
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def adjust_held_amounts(
        self,
        payment_id: str,
        expected_amount: Decimal,
        amount: Decimal,
        platform_fee: Decimal,
        net_amount: Decimal,
        total_amount: Decimal,
    ) -> bool:
        """
        調整託管金額：必須仍為 'held' 且金額沒有被其他請求改過
        """
        stmt = (
            update(Payment)
            .where(
                Payment.payment_id == payment_id,
                Payment.status == 'held',
                Payment.amount == expected_amount
            )
            .values(
                amount=amount,
                platform_fee=platform_fee,
                net_amount=net_amount,
                total_amount=total_amount
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1
