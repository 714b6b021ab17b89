# app/services/deadline_service.py
# 合約截止日提醒：由排程腳本 (app/scripts/check_contract_deadlines.py) 定期呼叫

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.websocket_manager import PresenceHub, hub
from app.models.contract import Contract
from app.repositories.contract_repo import ContractRepository
from app.repositories.job_repo import JobRepository
from app.repositories.user_repo import UserRepository
from app.services import email_service
from app.services.email_service import Mailer, ResendMailer
from app.services.notification_service import NotificationService
from app.services.side_effects import SideEffectQueue
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)

# (標籤, 已經過百分比下限, 上限)
PERCENT_MILESTONES = (
    ("50%", 50, 60),
    ("75%", 75, 85),
    ("90%", 90, 95),
)

MILESTONE_TEXT = {
    "50%": ("合約已過一半", "medium"),
    "75%": ("合約工期已過 75%", "medium"),
    "90%": ("⚠️ 截止日即將到來", "high"),
    "24h": ("🔴 距離截止日不到 24 小時", "urgent"),
}


@dataclass
class TimeProgress:
    percentage_elapsed: int
    days_remaining: int
    hours_remaining: int
    is_overdue: bool


def calculate_time_progress(start: Optional[datetime], deadline: Optional[datetime], now: datetime) -> Optional[TimeProgress]:
    if not start or not deadline or deadline <= start:
        return None
    total = (deadline - start).total_seconds()
    elapsed = (now - start).total_seconds()
    remaining = (deadline - now).total_seconds()
    return TimeProgress(
        percentage_elapsed=int(math.floor(elapsed / total * 100 + 0.5)),
        days_remaining=math.ceil(remaining / 86400),
        hours_remaining=math.ceil(remaining / 3600),
        is_overdue=now > deadline,
    )


def due_milestones(progress: TimeProgress, already_sent: List[str]) -> List[str]:
    """
    回傳這次應該發送、且之前沒發過的提醒 (逾期的合約不提醒)
    """
    if progress.is_overdue:
        return []
    due = [
        label for label, low, high in PERCENT_MILESTONES
        if low <= progress.percentage_elapsed < high
    ]
    if 0 < progress.hours_remaining <= 24:
        due.append("24h")
    return [label for label in due if label not in already_sent]


class DeadlineService:
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
        self.user_repo = UserRepository(db)
        self.notification_service = NotificationService(db, presence=self.presence)

    async def check_contract_deadlines(self) -> int:
        """
        檢查所有進行中的合約，回傳這次送出的提醒數
        """
        now = utcnow()
        contracts = await self.contract_repo.list_active_contracts_with_deadline()
        logger.info(f"⏰ Checking deadlines for {len(contracts)} active contracts")

        sent = 0
        # 單筆失敗會 rollback 並讓已載入的合約過期，每一筆都重新讀取
        for contract_id in [c.contract_id for c in contracts]:
            contract = await self.contract_repo.get_contract_by_id(contract_id)
            if contract is None:
                continue
            progress = calculate_time_progress(contract.start_date, contract.calculated_deadline, now)
            if progress is None:
                continue
            if progress.is_overdue:
                logger.info(f"⏭️ Contract {contract_id} is overdue, skipping")
                continue

            for label in due_milestones(progress, list(contract.deadline_warnings_sent or [])):
                try:
                    await self._send_milestone(contract, label, progress)
                    sent += 1
                except Exception as e:
                    await self.db.rollback()
                    logger.error(f"❌ Error sending {label} reminder for {contract_id}: {e}", exc_info=True)
                    break

        logger.info(f"✅ Deadline check completed, {sent} reminders sent")
        return sent

    async def _send_milestone(self, contract: Contract, label: str, progress: TimeProgress) -> None:
        # 先記錄已發送，避免下一輪重複提醒
        warnings = list(contract.deadline_warnings_sent or []) + [label]
        await self.contract_repo.set_deadline_warnings(contract.contract_id, warnings)
        await self.db.commit()
        contract.deadline_warnings_sent = warnings

        job = await self.job_repo.get_job_by_id(contract.job_id)
        job_title = job.title if job else ""
        title, priority = MILESTONE_TEXT[label]
        if label == "24h":
            content = f"「{job_title}」將在 {progress.hours_remaining} 小時內到期！"
        else:
            content = f"「{job_title}」的工期已過 {label}，剩下 {progress.days_remaining} 天。"

        queue = SideEffectQueue(f"deadline:{contract.contract_id}:{label}")
        for user_id in (contract.freelancer_id, contract.client_id):
            user = await self.user_repo.get_user_by_id(user_id)
            if user is None:
                continue
            queue.add(f"notify_{user_id}", lambda u=user_id: self.notification_service.notify(
                user_id=u, type="deadline_reminder", title=title, content=content,
                link_url=f"/contracts/{contract.contract_id}", category="contract", priority=priority,
                related_job_id=contract.job_id, related_contract_id=contract.contract_id,
            ))
            queue.add(f"emit_{user_id}", lambda u=user_id: self.presence.emit_to_user(u, "deadline_reminder", {
                "contract_id": contract.contract_id,
                "milestone": label,
                "days_remaining": progress.days_remaining,
                "message": content,
            }))
            if user.email:
                template = email_service.deadline_reminder_email(
                    user.display_name, job_title, contract.contract_id, label, contract.calculated_deadline
                )
                queue.add(f"email_{user_id}", lambda u=user, t=template: self.mailer.send(u.email, t["subject"], t["html"]))
        await queue.run()
        logger.info(f"✅ Sent {label} reminders for contract {contract.contract_id}")
