# app/core/config.py
# 應用程式設定 (資料庫連線字串、JWT 秘鑰、平台費率、外部服務金鑰等)
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # 資料庫設定
    DATABASE_URL: str
    # (可選) 設為 True 會在 console 印出 SQL 語句
    SQL_ECHO: bool = False

    # JWT 設定
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # --- 託管 (Escrow) 與金流 ---
    # 平台抽成比例 (10%)
    PLATFORM_FEE_RATE: float = 0.10
    CURRENCY: str = "USD"
    MIN_WITHDRAWAL_AMOUNT: float = 10.0

    # --- 聊天室 ---
    # 訊息可編輯的時間窗 (分鐘)
    MESSAGE_EDIT_WINDOW_MINUTES: int = 5
    # 回覆時間統計的過濾區間 (分鐘)，區間外的間隔視為離群值
    RESPONSE_TIME_MIN_MINUTES: float = 1
    RESPONSE_TIME_MAX_MINUTES: float = 1440

    # --- PayPal ---
    PAYPAL_CLIENT_ID: Optional[str] = None
    PAYPAL_CLIENT_SECRET: Optional[str] = None
    PAYPAL_MODE: str = "sandbox"

    # --- Email (Resend) ---
    RESEND_API_KEY: Optional[str] = None
    EMAIL_FROM_ADDRESS: str = "Freelance Platform <noreply@example.com>"

    # 前端網址 (用於 email 內的連結與 PayPal 導回)
    FRONTEND_URL: str = "http://localhost:5173"

# 建立設定實例
settings = Settings()
