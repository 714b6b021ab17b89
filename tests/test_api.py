from decimal import Decimal

import httpx
import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app.core.database import get_db
from app.core.security import create_access_token
from app.main import app
from app.routers.funds_router import get_funds_service
from app.services.funds_service import FundsService


def auth_header(user) -> dict:
    role = user.role.value if hasattr(user.role, "value") else user.role
    token = create_access_token({"sub": user.email, "user_id": user.user_id, "role": role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def client(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http
    app.dependency_overrides.clear()


async def test_requires_token(client):
    response = await client.get("/users/me")
    assert response.status_code == 401


async def test_me_returns_balance(client, make_user):
    user = await make_user("client", balance="12.50")
    response = await client.get("/users/me", headers=auth_header(user))
    assert response.status_code == 200
    body = response.json()
    assert body["user_id"] == user.user_id
    assert Decimal(str(body["balance"])) == Decimal("12.50")


async def test_app_error_body(client, make_user):
    user = await make_user("client")
    response = await client.get("/contracts/does-not-exist", headers=auth_header(user))
    assert response.status_code == 404
    assert response.json()["success"] is False
    assert response.json()["message"]


async def test_validation_error_lists_fields(client, make_user):
    user = await make_user("client")
    response = await client.post("/contracts", json={"job_id": "j", "proposal_id": "p", "freelancer_id": "f"},
                                 headers=auth_header(user))
    assert response.status_code == 422
    body = response.json()
    assert body["success"] is False
    assert "agreed_amount" in body["fields"]


async def test_create_contract_and_insufficient_funds(client, parties, make_user, make_job, make_proposal):
    owner, freelancer, job, proposal = parties
    response = await client.post("/contracts", headers=auth_header(owner), json={
        "job_id": job.job_id, "proposal_id": proposal.proposal_id,
        "freelancer_id": freelancer.user_id, "agreed_amount": "400.00",
    })
    assert response.status_code == 201
    escrow = response.json()["escrow"]
    assert escrow["status"] == "held"
    assert Decimal(str(escrow["platform_fee"])) == Decimal("40")

    poor = await make_user("client", balance="100")
    poor_job = await make_job(poor)
    poor_proposal = await make_proposal(poor_job, freelancer)
    response = await client.post("/contracts", headers=auth_header(poor), json={
        "job_id": poor_job.job_id, "proposal_id": poor_proposal.proposal_id,
        "freelancer_id": freelancer.user_id, "agreed_amount": "400.00",
    })
    assert response.status_code == 400
    body = response.json()
    assert body["requiredAmount"] == 400.0
    assert body["currentBalance"] == 100.0
    assert body["shortfall"] == 300.0


async def test_admin_routes_reject_non_admin(client, make_user):
    user = await make_user("client")
    admin = await make_user("admin")
    assert (await client.get("/admin/contracts", headers=auth_header(user))).status_code == 403
    assert (await client.get("/admin/contracts", headers=auth_header(admin))).status_code == 200


async def test_paypal_order_returns_approval_url(client, make_user, gateway, mailer):
    user = await make_user("client")

    def override_funds_service(db=Depends(get_db)):
        return FundsService(db, gateway=gateway, mailer=mailer)

    app.dependency_overrides[get_funds_service] = override_funds_service
    response = await client.post("/funds/paypal/order", json={"amount": "25"}, headers=auth_header(user))

    assert response.status_code == 201
    body = response.json()
    assert body["approval_url"] == "https://paypal.test/approve/ORDER-1"
    assert body["payment"]["status"] == "pending"


def test_websocket_rejects_bad_token():
    with TestClient(app) as test_client:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with test_client.websocket_connect("/ws?token=not-a-token"):
                pass
    assert exc_info.value.code == 1008


async def test_register_login_and_update_profile(client):
    response = await client.post("/auth/register", json={
        "email": "new@example.com", "password": "secret123", "role": "freelancer",
        "first_name": "New", "last_name": "Person",
    })
    assert response.status_code == 201

    duplicate = await client.post("/auth/register", json={
        "email": "new@example.com", "password": "secret123", "role": "freelancer",
    })
    assert duplicate.status_code == 400
    assert duplicate.json()["fields"] == ["email"]

    assert (await client.post("/auth/register", json={
        "email": "boss@example.com", "password": "secret123", "role": "admin",
    })).status_code == 422

    response = await client.post("/auth/token", data={"username": "new@example.com", "password": "secret123"})
    assert response.status_code == 200
    headers = {"Authorization": f"Bearer {response.json()['access_token']}"}

    response = await client.patch("/users/me", json={"paypal_email": "New@PayPal.test"}, headers=headers)
    assert response.status_code == 200
    assert response.json()["paypal_email"] == "new@paypal.test"

    wrong = await client.post("/auth/token", data={"username": "new@example.com", "password": "wrong-pass1"})
    assert wrong.status_code == 401


async def test_flag_message_and_admin_conversation_views(client, parties, make_user):
    owner, freelancer, job, _ = parties
    admin = await make_user("admin")
    response = await client.post("/conversations", headers=auth_header(owner), json={
        "job_id": job.job_id, "participant_id": freelancer.user_id,
    })
    assert response.status_code == 201
    cid = response.json()["conversation_id"]
    response = await client.post(f"/conversations/{cid}/messages", json={"content": "pay me off-site"},
                                 headers=auth_header(freelancer))
    message_id = response.json()["message_id"]

    response = await client.post(f"/messages/{message_id}/flag", json={"reason": "scam"}, headers=auth_header(owner))
    assert response.status_code == 200
    assert response.json()["newly_flagged"] is True
    blank = await client.post(f"/messages/{message_id}/flag", json={"reason": " "}, headers=auth_header(owner))
    assert blank.status_code == 400
    assert blank.json()["fields"] == ["reason"]

    assert (await client.get("/conversations/admin/reported", headers=auth_header(owner))).status_code == 403
    response = await client.get("/conversations/admin/reported", headers=auth_header(admin))
    assert response.status_code == 200
    [reported] = response.json()
    assert reported["conversation_id"] == cid
    assert reported["message_count"] == 1

    response = await client.get("/conversations/admin/all", headers=auth_header(admin))
    assert response.status_code == 200
    assert response.json()["count"] == 1
    assert response.json()["conversations"][0]["has_flagged_messages"] is True
