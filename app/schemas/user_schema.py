# app/schemas/user_schema.py
from pydantic import BaseModel, EmailStr, Field, field_validator, ConfigDict
import re
from datetime import datetime
from decimal import Decimal
from typing import Optional
from app.models.user import UserRoleEnum

# Token 回應的格式
class Token(BaseModel):
    access_token: str
    token_type: str

# Token 內的資料
class TokenData(BaseModel):
    user_id: str
    role: str


# 1. 註冊請求 Body
class UserCreate(BaseModel):
    email: EmailStr
    # 密碼要求英數混合
    password: str = Field(..., min_length=8)
    first_name: str = ""
    last_name: str = ""
    role: UserRoleEnum

    @field_validator('password')
    @classmethod
    def validate_password(cls, v: str) -> str:
        """
        驗證密碼是否至少8碼且包含英文和數字
        """
        if not re.search(r'(?=.*[a-zA-Z])(?=.*[0-9])', v):
            raise ValueError('密碼必須包含英文和數字')
        return v

    @field_validator('role')
    @classmethod
    def validate_role(cls, v: UserRoleEnum) -> UserRoleEnum:
        # 管理員帳號不開放自行註冊
        if v == UserRoleEnum.admin:
            raise ValueError('不可註冊管理員帳號')
        return v

# 2. 註冊/查詢使用者的安全回應
class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str # 我們在 MySQL 中使用 CHAR(36)，但在 Pydantic 中視為 str
    email: EmailStr
    first_name: str
    last_name: str
    role: UserRoleEnum
    is_active: bool

# 3. 目前使用者 (含錢包與統計)
class UserMeOut(UserOut):
    balance: Decimal
    total_earnings: Decimal
    completed_jobs: int
    completed_jobs_as_client: int
    response_time: int
    response_time_count: int
    is_online: bool
    last_seen: Optional[datetime] = None
    paypal_email: Optional[str] = None

class UserUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    paypal_email: Optional[EmailStr] = None
