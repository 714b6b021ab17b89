import os
from decimal import Decimal
from typing import Any, Dict, List

# Settings 在匯入時就會讀取環境變數，必須先設定好
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.core.websocket_manager import PresenceHub
import app.main  # noqa: F401  (註冊所有 Model)
from app.models.job import Job
from app.models.proposal import Proposal
from app.models.user import User, UserRoleEnum
from app.schemas.contract_schema import ContractCreate
from app.services.contract_service import ContractService


class FakeWebSocket:
    """記錄送出訊框的假 WebSocket"""

    def __init__(self, fail: bool = False):
        self.accepted = False
        self.fail = fail
        self.sent: List[Dict[str, Any]] = []

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("connection closed")
        self.sent.append(data)

    def events(self, name: str) -> List[Any]:
        return [frame["data"] for frame in self.sent if frame["event"] == name]


class FakeMailer:
    def __init__(self):
        self.sent: List[Dict[str, str]] = []

    async def send(self, to: str, subject: str, html: str) -> None:
        self.sent.append({"to": to, "subject": subject, "html": html})


class FakeGateway:
    """可設定回應的 PaymentGateway"""

    def __init__(self):
        self.order_result: Dict[str, Any] = {
            "success": True, "order_id": "ORDER-1", "status": "CREATED",
            "links": [{"rel": "approve", "href": "https://paypal.test/approve/ORDER-1"}],
        }
        self.capture_result: Dict[str, Any] = {
            "success": True, "order_id": "ORDER-1", "status": "COMPLETED", "capture_id": "CAP-1",
        }
        self.payout_result: Dict[str, Any] = {"success": True, "batch_id": "BATCH-1", "batch_status": "PENDING"}
        self.calls: List[tuple] = []

    async def create_order(self, amount, currency="USD"):
        self.calls.append(("create_order", amount))
        return dict(self.order_result)

    async def capture_order(self, order_id):
        self.calls.append(("capture_order", order_id))
        return dict(self.capture_result)

    async def create_payout(self, email, amount, currency="USD", note=""):
        self.calls.append(("create_payout", email, amount))
        return dict(self.payout_result)


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def hub():
    return PresenceHub()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    async def _make_user(role: str = "client", balance="0", **kwargs) -> User:
        counter["n"] += 1
        user = User(
            email=kwargs.pop("email", f"{role}{counter['n']}@example.com"),
            password_hash="not-a-real-hash",
            first_name=kwargs.pop("first_name", role.title()),
            last_name=kwargs.pop("last_name", str(counter["n"])),
            role=UserRoleEnum(role),
            balance=Decimal(str(balance)),
            **kwargs,
        )
        db.add(user)
        await db.commit()
        return user

    return _make_user


@pytest.fixture
def make_job(db):
    async def _make_job(client: User, title: str = "Build a landing page", budget="400") -> Job:
        job = Job(client_id=client.user_id, title=title, description="desc", status="open",
                  budget_amount=Decimal(str(budget)))
        db.add(job)
        await db.commit()
        return job

    return _make_job


@pytest.fixture
def make_proposal(db):
    async def _make_proposal(job: Job, freelancer: User, status: str = "accepted",
                             bid="400", delivery_time: int = 10) -> Proposal:
        proposal = Proposal(job_id=job.job_id, freelancer_id=freelancer.user_id, cover_letter="hi",
                            bid_amount=Decimal(str(bid)), delivery_time=delivery_time, status=status)
        db.add(proposal)
        await db.commit()
        return proposal

    return _make_proposal


@pytest.fixture
async def parties(make_user, make_job, make_proposal):
    """雇主 (餘額 1000)、工作者、案件與已接受的提案"""
    client = await make_user("client", balance="1000")
    freelancer = await make_user("freelancer")
    job = await make_job(client)
    proposal = await make_proposal(job, freelancer)
    return client, freelancer, job, proposal


@pytest.fixture
def contract_service(db, hub, mailer):
    return ContractService(db, presence=hub, mailer=mailer)


@pytest.fixture
async def funded_contract(parties, contract_service):
    """金額 400 的進行中合約 (已託管)"""
    client, freelancer, job, proposal = parties
    data = ContractCreate(
        job_id=job.job_id,
        proposal_id=proposal.proposal_id,
        freelancer_id=freelancer.user_id,
        agreed_amount=Decimal("400"),
        agreed_delivery_time=10,
    )
    return await contract_service.create_contract(data, client)


@pytest.fixture
def make_socket():
    def _make_socket(fail: bool = False) -> FakeWebSocket:
        return FakeWebSocket(fail=fail)

    return _make_socket
