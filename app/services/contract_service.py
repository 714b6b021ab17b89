# app/services/contract_service.py

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from datetime import timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable, List, Optional, Tuple
import logging

from app.core.exceptions import (
    NotFoundError, ForbiddenError, InvalidStateError, InvalidArgumentError
)
from app.core.security import is_admin
from app.core.websocket_manager import PresenceHub, hub
from app.models.contract import Contract, Deliverable, ContractAmountChange, TERMINAL_STATUSES
from app.models.payment import Payment
from app.models.user import User
from app.repositories.contract_repo import ContractRepository
from app.repositories.job_repo import JobRepository
from app.repositories.modification_repo import ModificationRepository
from app.repositories.proposal_repo import ProposalRepository
from app.repositories.user_repo import UserRepository
from app.schemas.contract_schema import ContractCreate
from app.services import email_service
from app.services.email_service import Mailer, ResendMailer
from app.services.escrow_service import EscrowService
from app.services.ledger_service import LedgerService
from app.services.notification_service import NotificationService
from app.services.side_effects import SideEffectQueue
from app.utils.clock import utcnow
from app.utils.money import to_money

logger = logging.getLogger(__name__)


class ContractService:
    """
    合約狀態機：active -> completed / terminated (終止狀態不可再變更)

    檢查順序固定為：存在 -> 權限 -> 狀態 -> 參數。
    狀態轉換都是條件式 UPDATE，搶輸的請求會得到 InvalidStateError。
    commit 之後的通知、寄信、推播放進 SideEffectQueue，失敗不回滾主要的狀態轉換。
    """
    def __init__(
        self,
        db: AsyncSession,
        presence: Optional[PresenceHub] = None,
        mailer: Optional[Mailer] = None,
    ):
        self.db = db
        self.presence = presence or hub
        self.mailer = mailer or ResendMailer()
        self.contract_repo = ContractRepository(db)
        self.job_repo = JobRepository(db)
        self.proposal_repo = ProposalRepository(db)
        self.user_repo = UserRepository(db)
        self.modification_repo = ModificationRepository(db)
        self.ledger = LedgerService(db)
        self.escrow = EscrowService(db, ledger=self.ledger)
        self.notification_service = NotificationService(db, presence=self.presence)

    # --- 共用輔助 ---

    async def _in_transaction(self, work: Callable[[], Awaitable[Any]]) -> Any:
        """執行 work 並 commit；任何錯誤都 rollback 後往外拋"""
        try:
            result = await work()
            await self.db.commit()
            return result
        except Exception:
            await self.db.rollback()
            raise

    async def _get_contract_or_404(self, contract_id: str) -> Contract:
        contract = await self.contract_repo.get_contract_by_id(contract_id)
        if not contract:
            raise NotFoundError("合約不存在")
        return contract

    async def _raise_lost_race(self, contract_id: str, message: str) -> None:
        """條件式更新沒有命中時，回報目前的狀態"""
        current = await self.contract_repo.get_contract_by_id(contract_id)
        raise InvalidStateError(message, current_status=current.status if current else None)

    @staticmethod
    def _ensure_active(contract: Contract, message: str = "合約目前不是進行中狀態") -> None:
        if contract.status != 'active':
            raise InvalidStateError(message, current_status=contract.status)

    async def _parties(self, contract: Contract) -> Tuple[User, User]:
        client = await self.user_repo.get_user_by_id(contract.client_id)
        freelancer = await self.user_repo.get_user_by_id(contract.freelancer_id)
        return client, freelancer

    async def _job_title(self, job_id: str) -> str:
        job = await self.job_repo.get_job_by_id(job_id)
        return job.title if job else "(案件已刪除)"

    async def _send_email(self, user: Optional[User], template: dict) -> None:
        if user is None or not user.email:
            return
        await self.mailer.send(user.email, template["subject"], template["html"])

    def _queue_notify(self, queue: SideEffectQueue, name: str, **kwargs) -> None:
        queue.add(name, lambda: self.notification_service.notify(**kwargs))

    def _queue_emit(self, queue: SideEffectQueue, name: str, user_id: str, event: str, data: dict) -> None:
        queue.add(name, lambda: self.presence.emit_to_user(user_id, event, data))

    # --- (C) 建立合約並託管款項 ---

    async def create_contract(self, contract_data: ContractCreate, actor: User) -> Contract:
        client_id = contract_data.client_id or actor.user_id

        # 步驟 1: 權限
        if not is_admin(actor) and actor.user_id != client_id:
            raise ForbiddenError("只有雇主本人可以建立合約")

        job = await self.job_repo.get_job_by_id(contract_data.job_id)
        if not job:
            raise NotFoundError("案件不存在")
        if job.client_id != client_id:
            raise ForbiddenError("你無權為此案件建立合約")

        proposal = await self.proposal_repo.get_proposal_by_id(contract_data.proposal_id)
        if not proposal:
            raise NotFoundError("提案不存在")

        # 步驟 2: 狀態
        if proposal.status != 'accepted':
            raise InvalidStateError("此提案狀態不符 (非 'accepted')", current_status=proposal.status)
        if await self.contract_repo.check_contract_exists_by_proposal(proposal.proposal_id):
            raise InvalidStateError("此提案已建立合約")

        # 步驟 3: 參數
        mismatched = []
        if proposal.job_id != job.job_id:
            mismatched.append("job_id")
        if proposal.freelancer_id != contract_data.freelancer_id:
            mismatched.append("freelancer_id")
        if mismatched:
            raise InvalidArgumentError("提案與案件 / 工作者不一致", fields=mismatched)

        amount = to_money(contract_data.agreed_amount)
        # 步驟 4: 任何寫入之前先確認餘額
        await self.ledger.ensure_sufficient(client_id, amount)

        now = utcnow()
        delivery_days = contract_data.agreed_delivery_time or proposal.delivery_time
        new_contract = Contract(
            job_id=job.job_id,
            proposal_id=proposal.proposal_id,
            client_id=client_id,
            freelancer_id=contract_data.freelancer_id,
            description=contract_data.description or job.description,
            agreed_amount=amount,
            budget_type=contract_data.budget_type,
            agreed_delivery_time=delivery_days,
            calculated_deadline=now + timedelta(days=delivery_days) if delivery_days else None,
            status='active',
            start_date=now,
            deadline_warnings_sent=[],
        )

        async def work():
            await self.contract_repo.create_contract(new_contract)
            await self.ledger.debit(client_id, amount)
            await self.escrow.open_escrow(new_contract, amount)
            await self.job_repo.update_status(job.job_id, 'in_progress')
            return new_contract

        try:
            await self._in_transaction(work)
        except IntegrityError:
            raise InvalidStateError("此提案已建立合約")

        contract = await self.contract_repo.get_contract_by_id(new_contract.contract_id)
        logger.info(f"📝 Contract created: {contract.contract_id} amount={amount}")

        client, freelancer = await self._parties(contract)
        link = f"/contracts/{contract.contract_id}"
        queue = SideEffectQueue(f"create_contract:{contract.contract_id}")
        for user in (client, freelancer):
            self._queue_notify(
                queue, f"notify_{user.user_id}",
                user_id=user.user_id, type="contract_created",
                title=f"合約已建立「{job.title}」",
                content=f"合約金額 {amount}，款項已託管。",
                link_url=link, category="contract", priority="high",
                related_job_id=job.job_id, related_contract_id=contract.contract_id,
                related_proposal_id=proposal.proposal_id,
            )
            queue.add(
                f"email_{user.user_id}",
                lambda u=user: self._send_email(
                    u, email_service.contract_created_email(u.display_name, job.title, amount, contract.contract_id)
                )
            )
            self._queue_emit(queue, f"emit_{user.user_id}", user.user_id, "contract_updated",
                             {"contract_id": contract.contract_id, "status": contract.status, "action": "created"})
        await queue.run()
        return contract

    # --- (R) 讀取 ---

    async def get_contract(self, contract_id: str, actor: User) -> Contract:
        contract = await self._get_contract_or_404(contract_id)
        if not is_admin(actor) and actor.user_id not in (contract.client_id, contract.freelancer_id):
            raise ForbiddenError("你無權查看此合約")
        return contract

    async def list_my_contracts(self, actor: User, role: Optional[str] = None) -> List[Contract]:
        return await self.contract_repo.list_contracts_by_user(actor.user_id, role=role)

    async def list_all_contracts(self, admin: User, status: Optional[str] = None,
                                 limit: int = 50, offset: int = 0) -> List[Contract]:
        if not is_admin(admin):
            raise ForbiddenError("需要管理員權限")
        return await self.contract_repo.list_contracts(status=status, limit=limit, offset=offset)

    async def get_latest_escrow(self, contract_id: str) -> Optional[Payment]:
        return await self.escrow.payment_repo.get_latest_escrow(contract_id)

    # --- 完成合約 (唯一的完成流程) ---

    async def complete_contract(self, contract_id: str, actor: User) -> Contract:
        """
        雇主或管理員將合約標記為完成
        """
        contract = await self._get_contract_or_404(contract_id)
        if actor.user_id != contract.client_id and not is_admin(actor):
            raise ForbiddenError("只有雇主或管理員可以完成合約")
        if contract.status in TERMINAL_STATUSES:
            raise InvalidStateError("合約已結束", current_status=contract.status)
        self._ensure_active(contract)

        contract, _ = await self._finalize_completion(contract, actor)
        return contract

    async def admin_complete_contract(self, contract_id: str, admin: User) -> Contract:
        contract = await self._get_contract_or_404(contract_id)
        if not is_admin(admin):
            raise ForbiddenError("需要管理員權限")
        self._ensure_active(contract)

        contract, _ = await self._finalize_completion(contract, admin)
        return contract

    async def _finalize_completion(
        self,
        contract: Contract,
        actor: User,
        deliverable: Optional[Deliverable] = None,
    ) -> Tuple[Contract, Optional[Decimal]]:
        """
        完成流程：
        1. (交易) 交付物 -> accepted (若有)，合約 active -> completed
           沒有指定交付物但合約上仍有待驗收的交付物時，一併標記為 accepted
        2. (後續) 案件 -> completed、完成數 +1、撥款、通知、寄信、推播
        撥款失敗只記錄，合約維持 completed，託管維持 held 等待對帳。
        回傳 (合約, 實際撥款金額或 None)

        後續步驟失敗會 rollback 並讓已載入的物件過期：
        步驟之後只使用區域變數與重新讀取的資料。
        """
        contract_id = contract.contract_id
        client_id = contract.client_id
        freelancer_id = contract.freelancer_id
        job_id = contract.job_id
        actor_id = actor.user_id
        if deliverable is not None:
            deliverable_id = deliverable.deliverable_id
            deliverable_status = deliverable.status
        else:
            deliverable_id = contract.pending_deliverable_id
            deliverable_status = 'pending_review'
        accepted_by_review = deliverable is not None
        now = utcnow()

        async def transition():
            if deliverable_id is not None:
                accepted = await self.contract_repo.review_deliverable(
                    deliverable_id, 'accepted',
                    reviewed_at=now, reviewed_by=actor_id
                )
                if not accepted and accepted_by_review:
                    raise InvalidStateError("交付物已被審核", current_status=deliverable_status)
            completed = await self.contract_repo.transition_status(
                contract_id, ['active'], 'completed',
                completed_at=now, end_date=now, pending_deliverable_id=None
            )
            if not completed:
                await self._raise_lost_race(contract_id, "合約已被其他操作變更")

        await self._in_transaction(transition)
        logger.info(f"🏁 Contract completed: {contract_id} by {actor_id}")

        job_title = await self._job_title(job_id)
        released = {"amount": None}

        async def update_job():
            await self.job_repo.update_status(job_id, 'completed', closed_at=now)
            await self.db.commit()

        async def bump_counters():
            await self._in_transaction(
                lambda: self.user_repo.increment_completed_jobs(freelancer_id, client_id)
            )

        async def release_payment():
            _, amount = await self._in_transaction(lambda: self.escrow.release_escrow(contract_id))
            released["amount"] = amount

        # 步驟 1: 資料更新 (各自獨立)
        steps = SideEffectQueue(f"complete_contract:{contract_id}")
        steps.add("job_completed", update_job)
        steps.add("completed_jobs_counters", bump_counters)
        steps.add("escrow_release", release_payment)
        await steps.run()
        if "escrow_release" in steps.failed:
            logger.error(f"⚠️ Contract {contract_id} completed but escrow is still held (needs reconciliation)")

        payout = released["amount"]
        link = f"/contracts/{contract_id}"
        client = await self.user_repo.get_user_by_id(client_id)
        freelancer = await self.user_repo.get_user_by_id(freelancer_id)

        # 步驟 2: 通知 / 寄信 / 推播
        fanout = SideEffectQueue(f"complete_contract_fanout:{contract_id}")
        if accepted_by_review:
            self._queue_notify(
                fanout, "notify_freelancer",
                user_id=freelancer_id, type="deliverable_accepted",
                title=f"交付物已通過驗收「{job_title}」",
                content=f"撥款金額 {payout}" if payout is not None else "合約已完成",
                link_url=link, category="contract", priority="high",
                related_job_id=job_id, related_contract_id=contract_id,
            )
        else:
            self._queue_notify(
                fanout, "notify_freelancer",
                user_id=freelancer_id, type="contract_completed",
                title=f"合約已完成「{job_title}」",
                content=f"撥款金額 {payout}" if payout is not None else "合約已完成",
                link_url=link, category="contract", priority="high",
                related_job_id=job_id, related_contract_id=contract_id,
            )
        self._queue_notify(
            fanout, "notify_client",
            user_id=client_id, type="contract_completed",
            title=f"合約已完成「{job_title}」",
            content="感謝您的合作，歡迎留下評價。",
            link_url=link, category="contract", priority="medium",
            related_job_id=job_id, related_contract_id=contract_id,
        )
        if freelancer is not None:
            freelancer_name = freelancer.display_name
            fanout.add("email_freelancer", lambda: self._send_email(
                freelancer,
                email_service.work_reviewed_email(freelancer_name, job_title, contract_id, True, payout=payout)
                if accepted_by_review else
                email_service.contract_completed_email(freelancer_name, job_title, contract_id, payout)
            ))
        if client is not None:
            client_name = client.display_name
            fanout.add("email_client", lambda: self._send_email(
                client, email_service.contract_completed_email(client_name, job_title, contract_id)
            ))
        event = {"contract_id": contract_id, "status": "completed"}
        if accepted_by_review:
            self._queue_emit(fanout, "emit_deliverable_accepted", freelancer_id, "deliverable_accepted",
                             {**event, "deliverable_id": deliverable_id})
        self._queue_emit(fanout, "emit_completed_freelancer", freelancer_id, "contract_completed", event)
        self._queue_emit(fanout, "emit_completed_client", client_id, "contract_completed", event)
        if payout is not None:
            self._queue_emit(fanout, "emit_payment_released", freelancer_id, "payment_released",
                             {"contract_id": contract_id, "amount": payout})
        await fanout.run()

        return await self.contract_repo.get_contract_by_id(contract_id), payout

    # --- 交付物 ---

    async def submit_work(
        self, contract_id: str, freelancer: User, description: str, files: Optional[List[str]] = None
    ) -> Tuple[Deliverable, Contract]:
        contract = await self._get_contract_or_404(contract_id)
        if contract.freelancer_id != freelancer.user_id:
            raise ForbiddenError("只有此合約的工作者可以提交交付物")
        self._ensure_active(contract)
        if contract.pending_deliverable_id:
            raise InvalidStateError("上一份交付物仍在等待驗收", current_status=contract.status)
        if not description or not description.strip():
            raise InvalidArgumentError("請填寫交付說明", fields=["description"])

        now = utcnow()
        deliverable = Deliverable(
            contract_id=contract_id,
            submitted_by=freelancer.user_id,
            description=description.strip(),
            files=list(files or []),
            status='pending_review',
            submitted_at=now,
        )

        async def work():
            await self.contract_repo.add_deliverable(deliverable)
            claimed = await self.contract_repo.claim_pending_deliverable(
                contract_id, deliverable.deliverable_id, delivered_at=now
            )
            if not claimed:
                await self._raise_lost_race(contract_id, "合約狀態已變更或已有待驗收的交付物")

        await self._in_transaction(work)
        logger.info(f"📦 Deliverable submitted: contract={contract_id} deliverable={deliverable.deliverable_id}")

        job_title = await self._job_title(contract.job_id)
        client, _ = await self._parties(contract)
        link = f"/contracts/{contract_id}"
        queue = SideEffectQueue(f"submit_work:{contract_id}")
        self._queue_notify(
            queue, "notify_client",
            user_id=contract.client_id, type="deliverable_submitted",
            title=f"工作者已提交交付物「{job_title}」",
            content=deliverable.description[:200],
            link_url=link, category="contract", priority="high",
            related_job_id=contract.job_id, related_contract_id=contract_id,
            related_user_id=freelancer.user_id,
        )
        self._queue_emit(queue, "emit_client", contract.client_id, "deliverable_submitted", {
            "contract_id": contract_id, "deliverable_id": deliverable.deliverable_id
        })
        queue.add("email_client", lambda: self._send_email(
            client, email_service.work_submitted_email(client.display_name, job_title, contract_id)
        ))
        await queue.run()

        contract = await self.contract_repo.get_contract_by_id(contract_id)
        deliverable = await self.contract_repo.get_deliverable(contract_id, deliverable.deliverable_id)
        return deliverable, contract

    async def review_work(
        self,
        contract_id: str,
        deliverable_id: str,
        client: User,
        action: str,
        revision_note: Optional[str] = None,
    ) -> Tuple[Deliverable, Contract, Optional[Decimal]]:
        contract = await self._get_contract_or_404(contract_id)
        if contract.client_id != client.user_id:
            raise ForbiddenError("只有此合約的雇主可以驗收交付物")
        self._ensure_active(contract)

        deliverable = await self.contract_repo.get_deliverable(contract_id, deliverable_id)
        if not deliverable:
            raise NotFoundError("交付物不存在")
        if deliverable.status != 'pending_review':
            raise InvalidStateError("此交付物不在待驗收狀態", current_status=deliverable.status)

        if action == "accept":
            contract, payout = await self._finalize_completion(contract, client, deliverable=deliverable)
            deliverable = await self.contract_repo.get_deliverable(contract_id, deliverable_id)
            return deliverable, contract, payout

        if action != "request_revision":
            raise InvalidArgumentError("action 必須是 accept 或 request_revision", fields=["action"])
        if not revision_note or not revision_note.strip():
            raise InvalidArgumentError("要求修改時必須填寫修改說明", fields=["revision_note"])

        now = utcnow()

        async def work():
            reviewed = await self.contract_repo.review_deliverable(
                deliverable_id, 'revision_requested',
                revision_note=revision_note.strip(), reviewed_at=now, reviewed_by=client.user_id
            )
            if not reviewed:
                raise InvalidStateError("交付物已被審核")
            released = await self.contract_repo.release_pending_deliverable(contract_id, deliverable_id)
            if not released:
                await self._raise_lost_race(contract_id, "合約狀態已變更")

        await self._in_transaction(work)
        logger.info(f"🔁 Revision requested: contract={contract_id} deliverable={deliverable_id}")

        job_title = await self._job_title(contract.job_id)
        _, freelancer = await self._parties(contract)
        link = f"/contracts/{contract_id}"
        queue = SideEffectQueue(f"request_revision:{contract_id}")
        self._queue_notify(
            queue, "notify_freelancer",
            user_id=contract.freelancer_id, type="revision_requested",
            title=f"雇主要求修改交付物「{job_title}」",
            content=revision_note.strip()[:200],
            link_url=link, category="contract", priority="high",
            related_job_id=contract.job_id, related_contract_id=contract_id,
        )
        self._queue_emit(queue, "emit_freelancer", contract.freelancer_id, "deliverable_rejected", {
            "contract_id": contract_id, "deliverable_id": deliverable_id, "revision_note": revision_note.strip()
        })
        queue.add("email_freelancer", lambda: self._send_email(
            freelancer,
            email_service.work_reviewed_email(freelancer.display_name, job_title, contract_id, False,
                                              note=revision_note.strip())
        ))
        await queue.run()

        contract = await self.contract_repo.get_contract_by_id(contract_id)
        deliverable = await self.contract_repo.get_deliverable(contract_id, deliverable_id)
        return deliverable, contract, None

    # --- 時薪制 ---

    async def update_hours_worked(self, contract_id: str, freelancer: User, hours: Decimal) -> Contract:
        """
        覆寫 (不是累加) 已工作時數
        """
        contract = await self._get_contract_or_404(contract_id)
        if contract.freelancer_id != freelancer.user_id:
            raise ForbiddenError("只有此合約的工作者可以更新工時")
        self._ensure_active(contract)
        if contract.budget_type != 'hourly':
            raise InvalidStateError("只有時薪制合約可以更新工時", current_status=contract.status)
        if hours is None or Decimal(hours) < 0:
            raise InvalidArgumentError("工時不可為負數", fields=["hours_worked"])

        async def work():
            updated = await self.contract_repo.update_if_active(contract_id, hours_worked=to_money(hours))
            if not updated:
                await self._raise_lost_race(contract_id, "合約狀態已變更")

        await self._in_transaction(work)
        return await self.contract_repo.get_contract_by_id(contract_id)

    # --- 管理員操作 ---

    async def admin_cancel_contract(self, contract_id: str, admin: User, reason: Optional[str] = None) -> Contract:
        """
        active / paused -> terminated，退回託管款項並重新開放案件
        """
        contract = await self._get_contract_or_404(contract_id)
        if not is_admin(admin):
            raise ForbiddenError("需要管理員權限")
        if contract.status not in ('active', 'paused'):
            raise InvalidStateError("只有進行中或暫停中的合約可以取消", current_status=contract.status)

        now = utcnow()
        reason = reason or "Cancelled by admin"
        refunded = {"amount": None}

        async def work():
            terminated = await self.contract_repo.transition_status(
                contract_id, ['active', 'paused'], 'terminated',
                terminated_at=now, end_date=now, pending_deliverable_id=None
            )
            if not terminated:
                await self._raise_lost_race(contract_id, "合約已被其他操作變更")
            if await self.escrow.get_held_escrow(contract_id):
                _, refunded["amount"] = await self.escrow.refund_escrow(contract_id, reason)
            pending = await self.modification_repo.get_pending_for_contract(contract_id)
            if pending:
                await self.modification_repo.resolve(
                    pending.request_id, 'cancelled', responded_at=now, response_note="合約已終止"
                )
            await self.job_repo.update_status(contract.job_id, 'open')

        await self._in_transaction(work)
        logger.info(f"🛑 Contract terminated by admin {admin.user_id}: {contract_id} refund={refunded['amount']}")

        job_title = await self._job_title(contract.job_id)
        client, freelancer = await self._parties(contract)
        link = f"/contracts/{contract_id}"
        queue = SideEffectQueue(f"admin_cancel:{contract_id}")
        for user in (client, freelancer):
            self._queue_notify(
                queue, f"notify_{user.user_id}",
                user_id=user.user_id, type="contract_terminated",
                title=f"合約已被管理員終止「{job_title}」",
                content=reason, link_url=link, category="contract", priority="urgent",
                related_job_id=contract.job_id, related_contract_id=contract_id,
            )
            queue.add(f"email_{user.user_id}", lambda u=user: self._send_email(
                u, email_service.contract_cancelled_email(u.display_name, job_title, contract_id)
            ))
            self._queue_emit(queue, f"emit_{user.user_id}", user.user_id, "contract_updated",
                             {"contract_id": contract_id, "status": "terminated", "action": "cancelled"})
        await queue.run()

        return await self.contract_repo.get_contract_by_id(contract_id)

    async def admin_update_contract_amount(
        self, contract_id: str, admin: User, new_amount: Decimal, reason: Optional[str] = None
    ) -> Contract:
        """
        直接調整合約金額與託管金額，並記錄在金額變更紀錄中。
        差額同樣經過 Ledger：增加向雇主扣款，減少退還雇主。
        """
        contract = await self._get_contract_or_404(contract_id)
        if not is_admin(admin):
            raise ForbiddenError("需要管理員權限")
        self._ensure_active(contract)
        if new_amount is None or to_money(new_amount) <= 0:
            raise InvalidArgumentError("合約金額必須大於 0", fields=["new_amount"])

        new_amount = to_money(new_amount)
        old_amount = to_money(contract.agreed_amount)
        delta = new_amount - old_amount
        if delta == 0:
            return contract

        escrow = await self.escrow.get_held_escrow(contract_id)
        if escrow is not None and delta > 0:
            await self.ledger.ensure_sufficient(contract.client_id, delta)

        async def work():
            updated = await self.contract_repo.update_if_active(contract_id, agreed_amount=new_amount)
            if not updated:
                await self._raise_lost_race(contract_id, "合約狀態已變更")
            if escrow is not None:
                if delta > 0:
                    await self.ledger.debit(contract.client_id, delta)
                else:
                    await self.ledger.credit(contract.client_id, -delta)
                await self.escrow.adjust_escrow(contract_id, delta)
            await self.contract_repo.add_amount_change(ContractAmountChange(
                contract_id=contract_id,
                old_amount=old_amount,
                new_amount=new_amount,
                changed_by=admin.user_id,
                reason=reason or "Admin adjustment",
                created_at=utcnow(),
            ))
            await self.job_repo.update_budget(contract.job_id, new_amount)

        await self._in_transaction(work)
        logger.info(f"🔧 Contract amount updated by admin {admin.user_id}: {contract_id} {old_amount} -> {new_amount}")

        link = f"/contracts/{contract_id}"
        queue = SideEffectQueue(f"admin_amount:{contract_id}")
        for user_id in (contract.client_id, contract.freelancer_id):
            self._queue_notify(
                queue, f"notify_{user_id}",
                user_id=user_id, type="contract_updated",
                title="合約金額已由管理員調整",
                content=f"{old_amount} → {new_amount}",
                link_url=link, category="contract", priority="high",
                related_job_id=contract.job_id, related_contract_id=contract_id,
            )
            self._queue_emit(queue, f"emit_{user_id}", user_id, "contract_updated", {
                "contract_id": contract_id, "agreed_amount": new_amount, "action": "amount_updated"
            })
        await queue.run()

        return await self.contract_repo.get_contract_by_id(contract_id)
