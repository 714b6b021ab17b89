# models/job.py
# 案件 (外部協作模組)：合約狀態機只依賴它的身份、狀態與預算
import uuid
from sqlalchemy import Column, String, TEXT, DECIMAL, TIMESTAMP, ForeignKey, Enum, CHAR, func
from sqlalchemy.orm import relationship
from app.core.database import Base

JobStatusEnum = Enum('open', 'in_progress', 'completed', 'closed', name="job_status_enum")

class Job(Base):
    __tablename__ = "jobs"

    job_id = Column(CHAR(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    client_id = Column(CHAR(36), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(TEXT)
    status = Column(JobStatusEnum, default='open', nullable=False)
    budget_amount = Column(DECIMAL(12, 2))
    closed_at = Column(TIMESTAMP, nullable=True)
    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())

    # 呼應 user.py 中的 'jobs_owned'
    client = relationship("User", back_populates="jobs_owned")

    proposals = relationship("Proposal", back_populates="job")

    # 理論上只會有一個合約，但架構允許多個
    contracts = relationship("Contract", back_populates="job")
