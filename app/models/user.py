# models/user.py
import uuid
import enum
from sqlalchemy import Column, String, Boolean, Enum, CHAR, DECIMAL, INT, TIMESTAMP, func
from sqlalchemy.orm import relationship
from app.core.database import Base

# 對應 SQL 中的 ENUM 型別
class UserRoleEnum(str, enum.Enum):
    freelancer = "freelancer"
    client = "client"
    admin = "admin"

class User(Base):
    __tablename__ = "users"

    # 基本欄位
    user_id = Column(CHAR(36), primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(255), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    first_name = Column(String(100), nullable=False, default="")
    last_name = Column(String(100), nullable=False, default="")
    role = Column(Enum(UserRoleEnum, values_callable=lambda obj: [e.value for e in obj]), nullable=False)
    is_active = Column(Boolean, default=True)

    # --- 錢包 ---
    # (重要) 金額欄位只能透過 LedgerService 以「相對增減」的方式修改
    balance = Column(DECIMAL(12, 2), nullable=False, default=0)
    total_earnings = Column(DECIMAL(12, 2), nullable=False, default=0)
    paypal_email = Column(String(255))

    # --- 統計 ---
    completed_jobs = Column(INT, nullable=False, default=0)
    completed_jobs_as_client = Column(INT, nullable=False, default=0)
    # 平均回覆時間 (分鐘) 與樣本數
    response_time = Column(INT, nullable=False, default=0)
    response_time_count = Column(INT, nullable=False, default=0)

    # --- 上線狀態 ---
    is_online = Column(Boolean, nullable=False, default=False)
    last_seen = Column(TIMESTAMP, nullable=True)

    created_at = Column(TIMESTAMP, server_default=func.now())

    # 作為雇主擁有的案件
    jobs_owned = relationship("Job", back_populates="client")

    # 作為雇主擁有的合約
    contracts_as_client = relationship(
        "Contract",
        foreign_keys="[Contract.client_id]",
        back_populates="client"
    )

    # 作為工作者擁有的合約
    contracts_as_freelancer = relationship(
        "Contract",
        foreign_keys="[Contract.freelancer_id]",
        back_populates="freelancer"
    )

    @property
    def display_name(self) -> str:
        full_name = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return full_name or (self.email.split('@')[0] if self.email else "")
