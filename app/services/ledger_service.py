# app/services/ledger_service.py
# 使用者餘額的唯一入口：所有金額變動都是資料庫端的相對增減

import logging
from decimal import Decimal
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFoundError, InsufficientFundsError, InvalidArgumentError
from app.repositories.user_repo import UserRepository
from app.utils.money import to_money

logger = logging.getLogger(__name__)


class LedgerService:
    """
    credit / debit 不 commit：呼叫端把同一個業務操作的所有金額步驟放在同一個交易中。
    同一個業務事件只能呼叫一次 (沒有內建去重)。
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.user_repo = UserRepository(db)

    async def get_balance(self, user_id: str) -> Decimal:
        balance = await self.user_repo.get_balance(user_id)
        if balance is None:
            raise NotFoundError("使用者不存在")
        return to_money(balance)

    async def ensure_sufficient(self, user_id: str, amount: Decimal) -> Decimal:
        """
        在任何寫入之前先檢查餘額，不足時 raise InsufficientFundsError
        """
        amount = to_money(amount)
        balance = await self.get_balance(user_id)
        if balance < amount:
            raise InsufficientFundsError(required_amount=amount, current_balance=balance)
        return balance

    async def credit(self, user_id: str, amount: Decimal, count_as_earnings: bool = False) -> None:
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidArgumentError("入帳金額必須大於 0", fields=["amount"])
        updated = await self.user_repo.increment_balance(user_id, amount, add_to_earnings=count_as_earnings)
        if not updated:
            raise NotFoundError("使用者不存在")
        logger.info(f"💰 Ledger credit: user={user_id} amount={amount} earnings={count_as_earnings}")

    async def debit(self, user_id: str, amount: Decimal) -> None:
        """
        條件式扣款 (balance >= amount 才扣)，檢查與扣款是同一個 SQL 敘述
        """
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidArgumentError("扣款金額必須大於 0", fields=["amount"])
        updated = await self.user_repo.decrement_balance_if_sufficient(user_id, amount)
        if not updated:
            balance = await self.get_balance(user_id)
            raise InsufficientFundsError(required_amount=amount, current_balance=balance)
        logger.info(f"💸 Ledger debit: user={user_id} amount={amount}")
