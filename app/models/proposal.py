# app/models/proposal.py
import uuid
from sqlalchemy import Column, Text, ForeignKey, TIMESTAMP, DECIMAL, INT, Enum, CHAR, func
from sqlalchemy.orm import relationship
from app.core.database import Base

ProposalStatusEnum = Enum('pending', 'accepted', 'rejected', name="proposal_status_enum")

class Proposal(Base):
    __tablename__ = "proposals"

    proposal_id = Column(CHAR(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    job_id = Column(CHAR(36), ForeignKey("jobs.job_id"), nullable=False, index=True)
    freelancer_id = Column(CHAR(36), ForeignKey("users.user_id"), nullable=False, index=True)

    cover_letter = Column(Text)
    bid_amount = Column(DECIMAL(12, 2))
    # 預計交付天數
    delivery_time = Column(INT)
    status = Column(ProposalStatusEnum, default='pending', nullable=False)

    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())

    # --- 建立關聯 (Relationships) ---
    job = relationship("Job", back_populates="proposals")
    freelancer = relationship("User")

    # 1-to-1 關聯到合約
    contract = relationship(
        "Contract",
        back_populates="proposal",
        uselist=False # 確保是 1-to-1
    )
