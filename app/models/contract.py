# app/models/contract.py

import uuid
from sqlalchemy import (
    Column, String, TEXT, DECIMAL, TIMESTAMP, INT, JSON, ForeignKey, Enum, CHAR, func
)
from sqlalchemy.orm import relationship
from app.core.database import Base

# --- 合約狀態機 ---
# 'paused' 為保留狀態，目前沒有任何流程會進入此狀態
ContractStatusEnum = Enum(
    'active', 'paused', 'completed', 'terminated',
    name="contract_status_enum"
)

BudgetTypeEnum = Enum('fixed', 'hourly', name="budget_type_enum")

DeliverableStatusEnum = Enum(
    'pending_review', 'accepted', 'revision_requested',
    name="deliverable_status_enum"
)

# 終止狀態 (sink)：進入後任何修改都不允許
TERMINAL_STATUSES = ('completed', 'terminated')


class Contract(Base):
    __tablename__ = "contracts"

    contract_id = Column(CHAR(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # --- 關聯 ---
    job_id = Column(CHAR(36), ForeignKey("jobs.job_id", ondelete="RESTRICT"), nullable=False, index=True)
    proposal_id = Column(CHAR(36), ForeignKey("proposals.proposal_id", ondelete="RESTRICT"), unique=True, nullable=False, index=True)
    client_id = Column(CHAR(36), ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False, index=True)
    freelancer_id = Column(CHAR(36), ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False, index=True)

    # --- 合約內容 ---
    description = Column(TEXT)
    agreed_amount = Column(DECIMAL(10, 2), nullable=False)
    budget_type = Column(BudgetTypeEnum, default='fixed', nullable=False)
    # 交付天數與推算出的截止日
    agreed_delivery_time = Column(INT)
    calculated_deadline = Column(TIMESTAMP, nullable=True)
    hours_worked = Column(DECIMAL(8, 2), nullable=False, default=0)

    # --- 狀態管理 ---
    status = Column(ContractStatusEnum, default='active', nullable=False, index=True)
    # 每次狀態轉換或金額變更 +1
    version = Column(INT, nullable=False, default=1)

    # (重要) 目前等待雇主驗收的交付物，同一時間最多一個
    pending_deliverable_id = Column(CHAR(36), nullable=True)

    # 已寄出的截止日提醒 (例如 ["50%", "75%"])
    deadline_warnings_sent = Column(JSON, nullable=False, default=list)

    # --- 時間戳記 ---
    start_date = Column(TIMESTAMP, nullable=False, server_default=func.now())
    end_date = Column(TIMESTAMP, nullable=True)
    delivered_at = Column(TIMESTAMP, nullable=True)
    completed_at = Column(TIMESTAMP, nullable=True)
    terminated_at = Column(TIMESTAMP, nullable=True)

    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())

    # --- SQLAlchemy Relationships (反向關聯) ---

    # 1-to-1 關聯回 Proposal
    proposal = relationship(
        "Proposal",
        back_populates="contract"
    )

    # 1-to-Many 關聯回 Job
    job = relationship(
        "Job",
        back_populates="contracts"
    )

    # 關聯回 User (雇主)
    client = relationship(
        "User",
        foreign_keys=[client_id],
        back_populates="contracts_as_client"
    )

    # 關聯回 User (工作者)
    freelancer = relationship(
        "User",
        foreign_keys=[freelancer_id],
        back_populates="contracts_as_freelancer"
    )

    deliverables = relationship(
        "Deliverable",
        back_populates="contract",
        order_by="Deliverable.submitted_at",
        cascade="all, delete-orphan",
        lazy="selectin"
    )

    amount_history = relationship(
        "ContractAmountChange",
        back_populates="contract",
        order_by="ContractAmountChange.created_at",
        cascade="all, delete-orphan",
        lazy="selectin"
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class Deliverable(Base):
    __tablename__ = "contract_deliverables"

    deliverable_id = Column(CHAR(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    contract_id = Column(CHAR(36), ForeignKey("contracts.contract_id", ondelete="CASCADE"), nullable=False, index=True)
    submitted_by = Column(CHAR(36), ForeignKey("users.user_id"), nullable=False)

    description = Column(TEXT, nullable=False)
    # 檔案參照 (URL 或檔名)
    files = Column(JSON, nullable=False, default=list)
    status = Column(DeliverableStatusEnum, default='pending_review', nullable=False)
    revision_note = Column(TEXT)

    submitted_at = Column(TIMESTAMP, nullable=False, server_default=func.now())
    reviewed_at = Column(TIMESTAMP, nullable=True)
    reviewed_by = Column(CHAR(36), ForeignKey("users.user_id"), nullable=True)

    contract = relationship("Contract", back_populates="deliverables")


class ContractAmountChange(Base):
    """合約金額變更紀錄 (修改請求核准或管理員調整)"""
    __tablename__ = "contract_amount_changes"

    change_id = Column(CHAR(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    contract_id = Column(CHAR(36), ForeignKey("contracts.contract_id", ondelete="CASCADE"), nullable=False, index=True)
    old_amount = Column(DECIMAL(10, 2), nullable=False)
    new_amount = Column(DECIMAL(10, 2), nullable=False)
    changed_by = Column(CHAR(36), ForeignKey("users.user_id"), nullable=False)
    reason = Column(String(500))
    created_at = Column(TIMESTAMP, nullable=False, server_default=func.now())

    contract = relationship("Contract", back_populates="amount_history")
