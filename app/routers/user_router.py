# app/routers/user_router.py
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from app.core.database import get_db
from app.core.security import get_current_user
from app.models.user import User
from app.schemas.user_schema import UserMeOut, UserUpdate
from app.services.auth_service import AuthService

router = APIRouter(
    prefix="/users",
    tags=["Users"],
    dependencies=[Depends(get_current_user)] # (重要) 整個路由都需要登入
)

@router.get("/me", response_model=UserMeOut)
async def read_users_me(
    current_user: User = Depends(get_current_user)
):
    """
    獲取當前登入使用者的資料 (含餘額、完成案件數、回覆時間，不含密碼)
    """
    return current_user

@router.patch("/me", response_model=UserMeOut)
async def update_users_me(
    update_data: UserUpdate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """
    更新姓名與提領用的 PayPal Email
    """
    auth_service = AuthService(db)
    return await auth_service.update_user(current_user, update_data)
