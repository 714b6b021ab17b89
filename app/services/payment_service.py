# app/services/payment_service.py

import logging
from typing import List, Optional
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFoundError, ForbiddenError, InvalidArgumentError
from app.core.security import is_admin
from app.models.payment import Payment
from app.models.user import User
from app.repositories.contract_repo import ContractRepository
from app.repositories.payment_repo import PaymentRepository

logger = logging.getLogger(__name__)


class PaymentService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.payment_repo = PaymentRepository(db)
        self.contract_repo = ContractRepository(db)

    async def get_my_payments(self, user: User, direction: Optional[str] = None) -> List[Payment]:
        if direction not in (None, "sent", "received"):
            raise InvalidArgumentError("type 只能是 'sent' 或 'received'", fields=["type"])
        return await self.payment_repo.list_payments_by_user(user.user_id, direction)

    async def get_payment(self, payment_id: str, user: User) -> Payment:
        payment = await self.payment_repo.get_payment_by_id(payment_id)
        if not payment:
            raise NotFoundError("付款紀錄不存在")
        if user.user_id not in (payment.payer_id, payment.payee_id) and not is_admin(user):
            raise ForbiddenError("你無權查看此付款紀錄")
        return payment

    async def get_contract_escrow(self, contract_id: str, user: User) -> Payment:
        """
        合約目前 (或最後一筆) 的託管紀錄
        """
        contract = await self.contract_repo.get_contract_by_id(contract_id)
        if not contract:
            raise NotFoundError("合約不存在")
        if user.user_id not in (contract.client_id, contract.freelancer_id) and not is_admin(user):
            raise ForbiddenError("你無權查看此合約的託管紀錄")
        escrow = await self.payment_repo.get_latest_escrow(contract_id)
        if not escrow:
            raise NotFoundError("此合約沒有託管紀錄")
        return escrow

    async def list_all_payments(
        self, admin: User, status: Optional[str] = None, type_: Optional[str] = None,
        limit: int = 50, offset: int = 0
    ) -> List[Payment]:
        if not is_admin(admin):
            raise ForbiddenError("需要管理員權限")
        return await self.payment_repo.list_payments(status=status, type_=type_, limit=limit, offset=offset)
