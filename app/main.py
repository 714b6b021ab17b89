import logging
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from app.core.exceptions import AppError
from app.routers import (
    auth_router, user_router,
    contract_router, modification_router, admin_router,
    payment_router, funds_router, notification_router
)

# 單獨匯入 "message_router.py" 檔案中的 *三個* router
from app.routers.message_router import (
    router as conversation_router,
    message_router,
    socket_router
)

# --- 匯入所有 Model 檔案 ---
# 都在應用程式啟動時被 SQLAlchemy 註冊。
from app.models import user
from app.models import job
from app.models import proposal
from app.models import contract
from app.models import payment
from app.models import modification_request
from app.models import notification
from app.models import message


# 設定基礎日誌
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__) # 建立一個 logger 實例

app = FastAPI()

# --- 設定 CORS (跨來源資源共用) ---
# 允許所有來源 (在生產環境中應限制)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"], # 允許所有來源 (或指定 'http://localhost:5173')
    allow_credentials=True,
    allow_methods=["*"], # 允許所有 HTTP 方法
    allow_headers=["*"], # 允許所有 HTTP 標頭
)

# --- 錯誤處理 ---
@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    fields = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        if loc and loc[-1] not in fields:
            fields.append(loc[-1])
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"success": False, "message": "請求參數格式錯誤", "fields": fields},
    )

# --- 根路徑 ---
@app.get("/")
def read_root():
    return {"status": "success", "message": "Backend is running!"}

# --- 載入 API 路由 ---
app.include_router(auth_router.router)
app.include_router(user_router.router)
app.include_router(contract_router.router)
app.include_router(modification_router.router)
app.include_router(admin_router.router)
app.include_router(payment_router.router)
app.include_router(funds_router.router)
app.include_router(notification_router.router)
app.include_router(conversation_router)
app.include_router(message_router)
app.include_router(socket_router)
