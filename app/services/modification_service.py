# app/services/modification_service.py
# 合約修改請求：工作者提出 -> 雇主核准 / 拒絕 (或工作者撤回)

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from datetime import timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable, List, Optional
import logging

from app.core.exceptions import (
    NotFoundError, ForbiddenError, InvalidStateError, InvalidArgumentError
)
from app.core.security import is_admin
from app.core.websocket_manager import PresenceHub, hub
from app.models.contract import ContractAmountChange
from app.models.modification_request import ContractModificationRequest
from app.models.user import User
from app.repositories.contract_repo import ContractRepository
from app.repositories.job_repo import JobRepository
from app.repositories.modification_repo import ModificationRepository
from app.repositories.user_repo import UserRepository
from app.schemas.modification_schema import ModificationCreate
from app.services import email_service
from app.services.email_service import Mailer, ResendMailer
from app.services.escrow_service import EscrowService
from app.services.ledger_service import LedgerService
from app.services.notification_service import NotificationService
from app.services.side_effects import SideEffectQueue
from app.utils.clock import utcnow
from app.utils.money import to_money

logger = logging.getLogger(__name__)

MODIFICATION_TYPES = ("budget", "deadline", "both")


class ModificationService:
    def __init__(
        self,
        db: AsyncSession,
        presence: Optional[PresenceHub] = None,
        mailer: Optional[Mailer] = None,
    ):
        self.db = db
        self.presence = presence or hub
        self.mailer = mailer or ResendMailer()
        self.repo = ModificationRepository(db)
        self.contract_repo = ContractRepository(db)
        self.job_repo = JobRepository(db)
        self.user_repo = UserRepository(db)
        self.ledger = LedgerService(db)
        self.escrow = EscrowService(db, ledger=self.ledger)
        self.notification_service = NotificationService(db, presence=self.presence)

    async def _in_transaction(self, work: Callable[[], Awaitable[Any]]) -> Any:
        try:
            result = await work()
            await self.db.commit()
            return result
        except Exception:
            await self.db.rollback()
            raise

    async def _get_request_or_404(self, request_id: str) -> ContractModificationRequest:
        request = await self.repo.get_request_by_id(request_id)
        if not request:
            raise NotFoundError("修改請求不存在")
        return request

    async def _job_title(self, job_id: str) -> str:
        job = await self.job_repo.get_job_by_id(job_id)
        return job.title if job else "(案件已刪除)"

    async def _send_email(self, user_id: str, build: Callable[[str], dict]) -> None:
        user = await self.user_repo.get_user_by_id(user_id)
        if user and user.email:
            template = build(user.display_name)
            await self.mailer.send(user.email, template["subject"], template["html"])

    @staticmethod
    def _validate_fields(data: ModificationCreate) -> None:
        if data.modification_type not in MODIFICATION_TYPES:
            raise InvalidArgumentError("modification_type 必須是 budget、deadline 或 both",
                                       fields=["modification_type"])
        invalid = []
        if data.modification_type in ("budget", "both"):
            if data.requested_budget is None or data.requested_budget <= 0:
                invalid.append("requested_budget")
        if data.modification_type in ("deadline", "both"):
            if data.requested_delivery_time is None or data.requested_delivery_time <= 0:
                invalid.append("requested_delivery_time")
        if not data.reason or not data.reason.strip():
            invalid.append("reason")
        if invalid:
            raise InvalidArgumentError("請提供有效的修改內容", fields=invalid)

    # --- (C) 工作者提出修改請求 ---

    async def request_modification(self, data: ModificationCreate, freelancer: User) -> ContractModificationRequest:
        contract = await self.contract_repo.get_contract_by_id(data.contract_id)
        if not contract:
            raise NotFoundError("合約不存在")
        if contract.freelancer_id != freelancer.user_id:
            raise ForbiddenError("只有此合約的工作者可以提出修改請求")
        if contract.status != 'active':
            raise InvalidStateError("只有進行中的合約可以修改", current_status=contract.status)
        if await self.repo.get_pending_for_contract(contract.contract_id):
            raise InvalidStateError("此合約已有待處理的修改請求", current_status=contract.status)
        self._validate_fields(data)

        current_budget = to_money(contract.agreed_amount)
        requested_budget = None
        budget_difference = Decimal("0.00")
        if data.modification_type in ("budget", "both"):
            requested_budget = to_money(data.requested_budget)
            budget_difference = requested_budget - current_budget

        requested_delivery_time = None
        requested_deadline = None
        if data.modification_type in ("deadline", "both"):
            requested_delivery_time = data.requested_delivery_time
            requested_deadline = contract.start_date + timedelta(days=requested_delivery_time)

        request = ContractModificationRequest(
            contract_id=contract.contract_id,
            job_id=contract.job_id,
            requested_by=freelancer.user_id,
            requested_to=contract.client_id,
            modification_type=data.modification_type,
            current_budget=current_budget,
            current_delivery_time=contract.agreed_delivery_time,
            current_deadline=contract.calculated_deadline,
            requested_budget=requested_budget,
            requested_delivery_time=requested_delivery_time,
            requested_deadline=requested_deadline,
            budget_difference=budget_difference,
            reason=data.reason.strip(),
            status='pending',
            pending_for_contract_id=contract.contract_id,
        )
        try:
            await self._in_transaction(lambda: self.repo.create_request(request))
        except IntegrityError:
            raise InvalidStateError("此合約已有待處理的修改請求", current_status=contract.status)
        logger.info(f"✏️ Modification requested: contract={contract.contract_id} diff={budget_difference}")

        job_title = await self._job_title(contract.job_id)
        link = f"/modification-requests/{request.request_id}"
        queue = SideEffectQueue(f"request_modification:{request.request_id}")
        queue.add("notify_client", lambda: self.notification_service.notify(
            user_id=contract.client_id, type="modification_requested",
            title=f"工作者提出合約修改請求「{job_title}」",
            content=request.reason[:200], link_url=link, category="contract", priority="high",
            related_job_id=contract.job_id, related_contract_id=contract.contract_id,
            related_user_id=freelancer.user_id,
        ))
        queue.add("email_client", lambda: self._send_email(
            contract.client_id,
            lambda name: email_service.modification_requested_email(
                name, job_title, request.request_id, request.reason
            )
        ))
        await queue.run()

        return await self.repo.get_request_by_id(request.request_id)

    # --- (U) 雇主回覆 ---

    async def respond_to_modification(
        self, request_id: str, client: User, action: str, response_note: Optional[str] = None
    ) -> ContractModificationRequest:
        request = await self._get_request_or_404(request_id)
        if request.requested_to != client.user_id:
            raise ForbiddenError("只有此修改請求的審核者可以回覆")
        if request.status != 'pending':
            raise InvalidStateError("此修改請求已處理", current_status=request.status)
        if action not in ("approve", "reject"):
            raise InvalidArgumentError("action 必須是 approve 或 reject", fields=["action"])

        now = utcnow()
        if action == "reject":
            async def reject():
                resolved = await self.repo.resolve(
                    request_id, 'rejected', response_note=response_note, responded_at=now
                )
                if not resolved:
                    raise InvalidStateError("此修改請求已處理")
            await self._in_transaction(reject)
            logger.info(f"❌ Modification rejected: {request_id}")
        else:
            await self._approve(request, client, response_note)

        request = await self.repo.get_request_by_id(request_id)
        approved = request.status == 'approved'
        job_title = await self._job_title(request.job_id)
        link = f"/modification-requests/{request_id}"
        queue = SideEffectQueue(f"respond_modification:{request_id}")
        queue.add("notify_freelancer", lambda: self.notification_service.notify(
            user_id=request.requested_by,
            type="modification_approved" if approved else "modification_rejected",
            title=f"修改請求{'已核准' if approved else '已拒絕'}「{job_title}」",
            content=response_note, link_url=link, category="contract", priority="high",
            related_job_id=request.job_id, related_contract_id=request.contract_id,
            related_user_id=client.user_id,
        ))
        queue.add("email_freelancer", lambda: self._send_email(
            request.requested_by,
            lambda name: email_service.modification_responded_email(
                name, job_title, request_id, approved, response_note
            )
        ))
        if approved:
            for user_id in (request.requested_by, request.requested_to):
                queue.add(f"emit_{user_id}", lambda uid=user_id: self.presence.emit_to_user(
                    uid, "contract_updated",
                    {"contract_id": request.contract_id, "action": "modification_approved"}
                ))
        await queue.run()
        return request

    async def _approve(self, request: ContractModificationRequest, client: User, response_note: Optional[str]) -> None:
        contract = await self.contract_repo.get_contract_by_id(request.contract_id)
        if not contract:
            raise NotFoundError("合約不存在")
        if contract.status != 'active':
            raise InvalidStateError("合約已不是進行中狀態", current_status=contract.status)

        budget_changed = request.modification_type in ("budget", "both")
        deadline_changed = request.modification_type in ("deadline", "both")
        old_amount = to_money(contract.agreed_amount)
        new_amount = to_money(request.requested_budget) if budget_changed else old_amount
        # 以核准當下的合約金額計算差額
        delta = new_amount - old_amount
        escrow = await self.escrow.get_held_escrow(contract.contract_id) if budget_changed else None

        # 任何寫入之前先確認雇主餘額
        if escrow is not None and delta > 0:
            await self.ledger.ensure_sufficient(contract.client_id, delta)

        now = utcnow()

        async def work():
            resolved = await self.repo.resolve(
                request.request_id, 'approved', response_note=response_note, responded_at=now
            )
            if not resolved:
                raise InvalidStateError("此修改請求已處理")

            values = {}
            if budget_changed:
                values["agreed_amount"] = new_amount
            if deadline_changed:
                values["agreed_delivery_time"] = request.requested_delivery_time
                values["calculated_deadline"] = contract.start_date + timedelta(days=request.requested_delivery_time)
                # 新的截止日重新計算提醒
                values["deadline_warnings_sent"] = []
            updated = await self.contract_repo.update_if_active(contract.contract_id, **values)
            if not updated:
                raise InvalidStateError("合約已不是進行中狀態")

            if budget_changed and delta != 0:
                if escrow is not None:
                    if delta > 0:
                        await self.ledger.debit(contract.client_id, delta)
                    else:
                        await self.ledger.credit(contract.client_id, -delta)
                    await self.escrow.adjust_escrow(contract.contract_id, delta)
                await self.contract_repo.add_amount_change(ContractAmountChange(
                    contract_id=contract.contract_id,
                    old_amount=old_amount,
                    new_amount=new_amount,
                    changed_by=client.user_id,
                    reason=f"Modification request {request.request_id}",
                    created_at=now,
                ))
                await self.job_repo.update_budget(contract.job_id, new_amount)

        await self._in_transaction(work)
        logger.info(f"✅ Modification approved: {request.request_id} amount {old_amount} -> {new_amount}")

    # --- (D) 工作者撤回 ---

    async def cancel_modification(self, request_id: str, freelancer: User) -> ContractModificationRequest:
        request = await self._get_request_or_404(request_id)
        if request.requested_by != freelancer.user_id:
            raise ForbiddenError("只有提出者可以撤回修改請求")
        if request.status != 'pending':
            raise InvalidStateError("只能撤回待處理的修改請求", current_status=request.status)

        async def work():
            resolved = await self.repo.resolve(request_id, 'cancelled', responded_at=utcnow())
            if not resolved:
                raise InvalidStateError("此修改請求已處理")

        await self._in_transaction(work)
        return await self.repo.get_request_by_id(request_id)

    # --- (R) 讀取 ---

    async def get_request(self, request_id: str, actor: User) -> ContractModificationRequest:
        request = await self._get_request_or_404(request_id)
        if not is_admin(actor) and actor.user_id not in (request.requested_by, request.requested_to):
            raise ForbiddenError("你無權查看此修改請求")
        return request

    async def list_my_requests(
        self, actor: User, status: Optional[str] = None, role: Optional[str] = None
    ) -> List[ContractModificationRequest]:
        return await self.repo.list_by_user(actor.user_id, status=status, role=role)

    async def list_for_contract(self, contract_id: str, actor: User) -> List[ContractModificationRequest]:
        contract = await self.contract_repo.get_contract_by_id(contract_id)
        if not contract:
            raise NotFoundError("合約不存在")
        if not is_admin(actor) and actor.user_id not in (contract.client_id, contract.freelancer_id):
            raise ForbiddenError("你無權查看此合約的修改請求")
        return await self.repo.list_by_contract(contract_id)
