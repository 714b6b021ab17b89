# app/models/payment.py

import uuid
from sqlalchemy import (
    Column, String, TEXT, DECIMAL, TIMESTAMP, Boolean, JSON, ForeignKey, Enum, CHAR, func
)
from sqlalchemy.orm import relationship
from app.core.database import Base

PaymentStatusEnum = Enum(
    'pending', 'held', 'completed', 'released', 'refunded', 'failed', 'cancelled',
    name="payment_status_enum"
)

PaymentTypeEnum = Enum('payment', 'withdrawal', 'refund', 'escrow', name="payment_type_enum")

PaymentMethodEnum = Enum('balance', 'paypal', name="payment_method_enum")


class Payment(Base):
    """
    金流紀錄：託管 (escrow)、儲值 (payment)、提領 (withdrawal)
    """
    __tablename__ = "payments"

    payment_id = Column(CHAR(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # 提領紀錄沒有合約
    contract_id = Column(CHAR(36), ForeignKey("contracts.contract_id", ondelete="RESTRICT"), nullable=True, index=True)
    payer_id = Column(CHAR(36), ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True, index=True)
    payee_id = Column(CHAR(36), ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True, index=True)

    # --- 金額 ---
    # net_amount = amount - platform_fee, total_amount = amount + platform_fee
    amount = Column(DECIMAL(10, 2), nullable=False)
    platform_fee = Column(DECIMAL(10, 2), nullable=False, default=0)
    net_amount = Column(DECIMAL(10, 2), nullable=False, default=0)
    total_amount = Column(DECIMAL(10, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")

    payment_method = Column(PaymentMethodEnum, nullable=False, default='balance')
    status = Column(PaymentStatusEnum, nullable=False, default='pending', index=True)
    type = Column(PaymentTypeEnum, nullable=False, default='payment')
    is_escrow = Column(Boolean, nullable=False, default=False)

    # (重要) 託管鎖定欄位：held 期間 = contract_id，結束後清為 NULL
    # UNIQUE 保證同一合約同時最多只有一筆 held 託管
    held_for_contract_id = Column(CHAR(36), unique=True, nullable=True)

    transaction_id = Column(String(64), unique=True, nullable=True)
    description = Column(TEXT)
    failure_reason = Column(TEXT)
    refund_reason = Column(TEXT)

    # --- PayPal ---
    paypal_order_id = Column(String(64), unique=True, nullable=True)
    paypal_batch_id = Column(String(64), nullable=True)
    paypal_email = Column(String(255), nullable=True)
    gateway_response = Column(JSON, nullable=True)

    # --- 時間戳記 ---
    held_at = Column(TIMESTAMP, nullable=True)
    released_at = Column(TIMESTAMP, nullable=True)
    refunded_at = Column(TIMESTAMP, nullable=True)
    completed_at = Column(TIMESTAMP, nullable=True)
    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())

    contract = relationship("Contract")
    payer = relationship("User", foreign_keys=[payer_id])
    payee = relationship("User", foreign_keys=[payee_id])
