# app/models/modification_request.py

import uuid
from sqlalchemy import (
    Column, TEXT, DECIMAL, TIMESTAMP, INT, ForeignKey, Enum, CHAR, func
)
from sqlalchemy.orm import relationship
from app.core.database import Base

ModificationTypeEnum = Enum('budget', 'deadline', 'both', name="modification_type_enum")

# 'cancelled'：由發起的工作者撤回
ModificationStatusEnum = Enum(
    'pending', 'approved', 'rejected', 'cancelled',
    name="modification_status_enum"
)


class ContractModificationRequest(Base):
    __tablename__ = "contract_modification_requests"

    request_id = Column(CHAR(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    contract_id = Column(CHAR(36), ForeignKey("contracts.contract_id", ondelete="CASCADE"), nullable=False, index=True)
    job_id = Column(CHAR(36), ForeignKey("jobs.job_id", ondelete="CASCADE"), nullable=False)
    # 發起者 (工作者) 與審核者 (雇主)
    requested_by = Column(CHAR(36), ForeignKey("users.user_id"), nullable=False, index=True)
    requested_to = Column(CHAR(36), ForeignKey("users.user_id"), nullable=False, index=True)

    modification_type = Column(ModificationTypeEnum, nullable=False)

    # --- 目前值 (快照) ---
    current_budget = Column(DECIMAL(10, 2), nullable=False)
    current_delivery_time = Column(INT)
    current_deadline = Column(TIMESTAMP, nullable=True)

    # --- 請求值 ---
    requested_budget = Column(DECIMAL(10, 2))
    requested_delivery_time = Column(INT)
    requested_deadline = Column(TIMESTAMP, nullable=True)

    # requested_budget - current_budget (有正負號)
    budget_difference = Column(DECIMAL(10, 2), nullable=False, default=0)

    reason = Column(TEXT, nullable=False)
    status = Column(ModificationStatusEnum, nullable=False, default='pending', index=True)
    response_note = Column(TEXT)
    responded_at = Column(TIMESTAMP, nullable=True)

    # (重要) pending 期間 = contract_id，結案後清為 NULL
    # UNIQUE 保證每個合約最多一筆 pending 請求
    pending_for_contract_id = Column(CHAR(36), unique=True, nullable=True)

    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())

    contract = relationship("Contract")
    requester = relationship("User", foreign_keys=[requested_by])
    approver = relationship("User", foreign_keys=[requested_to])
