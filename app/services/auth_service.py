# app/services/auth_service.py
# 註冊、登入與個人資料更新 (Token 只帶 user_id 與 role，錢包資料一律即時查詢)

import logging
import uuid
from sqlalchemy.ext.asyncio import AsyncSession
from app.repositories.user_repo import UserRepository
from app.core.security import verify_password, create_access_token, get_password_hash
from app.core.exceptions import InvalidArgumentError
from app.models.user import User
from app.schemas.user_schema import UserCreate, UserUpdate

logger = logging.getLogger(__name__)


class AuthService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.user_repo = UserRepository(db)

    async def authenticate_user(self, email: str, password: str) -> User | None:
        """
        驗證帳號密碼，成功回傳 User，失敗 (不存在 / 停權 / 密碼錯誤) 回傳 None
        """
        user = await self.user_repo.get_user_by_email(email)
        if not user or not user.is_active:
            return None
        if not verify_password(plain_password=password, hashed_password=user.password_hash):
            return None
        return user

    async def register_user(self, user_create: UserCreate) -> User:
        if await self.user_repo.get_user_by_email(user_create.email):
            raise InvalidArgumentError("此 Email 已經被註冊", fields=["email"])

        # 新帳號的餘額、統計欄位都從 0 開始 (見 Model 預設值)
        new_user = User(
            user_id=str(uuid.uuid4()),
            email=user_create.email,
            password_hash=get_password_hash(user_create.password),
            first_name=user_create.first_name,
            last_name=user_create.last_name,
            role=user_create.role
        )
        created = await self.user_repo.create_user(new_user)
        logger.info(f"👤 User registered: {created.user_id} ({created.role.value})")
        return created

    async def update_user(self, user: User, update_data: UserUpdate) -> User:
        """
        只更新有傳入的欄位 (姓名、PayPal 提領帳號)；餘額等欄位不開放從這裡修改
        """
        changes = update_data.model_dump(exclude_unset=True)
        if "paypal_email" in changes and changes["paypal_email"] is not None:
            changes["paypal_email"] = str(changes["paypal_email"]).lower()
        for field, value in changes.items():
            setattr(user, field, value)
        await self.db.commit()
        logger.info(f"User {user.user_id} updated: {sorted(changes)}")
        return await self.user_repo.get_user_by_id(user.user_id)

    def create_login_token(self, user: User) -> str:
        return create_access_token(
            data={
                "sub": user.email,
                "user_id": str(user.user_id),
                "role": user.role.value
            }
        )
