# app/services/email_service.py
# Email 寄送 (Resend)：所有寄信都是盡力而為，失敗只記錄不拋出

import asyncio
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol

import resend

from app.core.config import settings

logger = logging.getLogger(__name__)


class Mailer(Protocol):
    async def send(self, to: str, subject: str, html: str) -> Dict[str, Any]:
        ...


class ResendMailer:
    """
    透過 Resend SDK 寄信。SDK 為同步呼叫，因此丟到 worker thread 執行
    """

    def __init__(self, api_key: Optional[str] = None, from_address: Optional[str] = None):
        self.api_key = api_key if api_key is not None else settings.RESEND_API_KEY
        self.from_address = from_address or settings.EMAIL_FROM_ADDRESS

    async def send(self, to: str, subject: str, html: str) -> Dict[str, Any]:
        if not self.api_key:
            logger.info(f"RESEND_API_KEY 未設定，略過寄信: {subject} -> {to}")
            return {"success": False, "skipped": True}

        resend.api_key = self.api_key
        payload = {
            "from": self.from_address,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        response = await asyncio.to_thread(resend.Emails.send, payload)
        logger.info(f"📧 Email sent: {subject} -> {to}")
        return {"success": True, "id": response.get("id") if isinstance(response, dict) else None}


# --- 郵件範本 ---

def _layout(title: str, paragraphs: List[str], link_path: Optional[str] = None) -> str:
    body = "".join(f"<p>{p}</p>" for p in paragraphs)
    button = ""
    if link_path:
        button = f'<p><a href="{settings.FRONTEND_URL}{link_path}">前往查看</a></p>'
    return f"<h2>{title}</h2>{body}{button}"


def _money(amount: Any) -> str:
    return f"{settings.CURRENCY} {Decimal(str(amount)):,.2f}"


def contract_created_email(name: str, job_title: str, amount: Any, contract_id: str) -> Dict[str, str]:
    return {
        "subject": f"合約已建立：{job_title}",
        "html": _layout(
            "合約已建立",
            [f"{name} 您好，", f"案件「{job_title}」的合約已建立，託管金額 {_money(amount)}。"],
            f"/contracts/{contract_id}",
        ),
    }


def contract_completed_email(name: str, job_title: str, contract_id: str, payout: Any = None) -> Dict[str, str]:
    paragraphs = [f"{name} 您好，", f"案件「{job_title}」的合約已完成。"]
    if payout is not None:
        paragraphs.append(f"已撥款 {_money(payout)} 至您的帳戶餘額。")
    return {
        "subject": f"合約已完成：{job_title}",
        "html": _layout("合約已完成", paragraphs, f"/contracts/{contract_id}"),
    }


def contract_cancelled_email(name: str, job_title: str, contract_id: str) -> Dict[str, str]:
    return {
        "subject": f"合約已被管理員終止：{job_title}",
        "html": _layout(
            "合約已終止",
            [f"{name} 您好，", f"案件「{job_title}」的合約已由管理員終止，託管款項已退回雇主。"],
            f"/contracts/{contract_id}",
        ),
    }


def work_submitted_email(name: str, job_title: str, contract_id: str) -> Dict[str, str]:
    return {
        "subject": f"工作者已提交交付物：{job_title}",
        "html": _layout(
            "新的交付物",
            [f"{name} 您好，", f"案件「{job_title}」有新的交付物等待您驗收。"],
            f"/contracts/{contract_id}",
        ),
    }


def work_reviewed_email(name: str, job_title: str, contract_id: str, accepted: bool,
                        note: Optional[str] = None, payout: Any = None) -> Dict[str, str]:
    if accepted:
        paragraphs = [f"{name} 您好，", f"雇主已驗收「{job_title}」的交付物。"]
        if payout is not None:
            paragraphs.append(f"撥款金額：{_money(payout)}")
        subject = f"交付物已通過驗收：{job_title}"
    else:
        paragraphs = [f"{name} 您好，", f"雇主要求修改「{job_title}」的交付物。", f"修改說明：{note or ''}"]
        subject = f"雇主要求修改交付物：{job_title}"
    return {"subject": subject, "html": _layout(subject, paragraphs, f"/contracts/{contract_id}")}


def modification_requested_email(name: str, job_title: str, request_id: str, reason: str) -> Dict[str, str]:
    return {
        "subject": f"合約修改請求：{job_title}",
        "html": _layout(
            "合約修改請求",
            [f"{name} 您好，", f"工作者對「{job_title}」提出合約修改請求。", f"原因：{reason}"],
            f"/modification-requests/{request_id}",
        ),
    }


def modification_responded_email(name: str, job_title: str, request_id: str, approved: bool,
                                 note: Optional[str] = None) -> Dict[str, str]:
    result = "已核准" if approved else "已拒絕"
    paragraphs = [f"{name} 您好，", f"您對「{job_title}」提出的修改請求{result}。"]
    if note:
        paragraphs.append(f"雇主備註：{note}")
    return {
        "subject": f"修改請求{result}：{job_title}",
        "html": _layout(f"修改請求{result}", paragraphs, f"/modification-requests/{request_id}"),
    }


def deadline_reminder_email(name: str, job_title: str, contract_id: str, label: str, deadline) -> Dict[str, str]:
    if label == "24h":
        text = f"「{job_title}」距離截止日不到 24 小時。"
    else:
        text = f"「{job_title}」的工期已經過了 {label}。"
    return {
        "subject": f"截止日提醒：{job_title}",
        "html": _layout(
            "截止日提醒",
            [f"{name} 您好，", text, f"截止日：{deadline:%Y-%m-%d %H:%M} (UTC)"],
            f"/contracts/{contract_id}",
        ),
    }


def withdrawal_email(name: str, amount: Any, paypal_email: str) -> Dict[str, str]:
    return {
        "subject": "提領申請已送出",
        "html": _layout(
            "提領申請已送出",
            [f"{name} 您好，", f"{_money(amount)} 已送往 PayPal 帳戶 {paypal_email}。"],
            "/wallet",
        ),
    }
