from decimal import Decimal

import pytest

from app.core.exceptions import (
    ForbiddenError, InsufficientFundsError, InvalidArgumentError, InvalidStateError, NotFoundError
)
from app.models.notification import Notification
from app.repositories.contract_repo import ContractRepository
from app.repositories.job_repo import JobRepository
from app.repositories.payment_repo import PaymentRepository
from app.repositories.user_repo import UserRepository
from app.schemas.contract_schema import ContractCreate
from app.schemas.modification_schema import ModificationCreate
from app.services.escrow_service import EscrowService
from app.services.ledger_service import LedgerService
from app.services.modification_service import ModificationService
from sqlalchemy.future import select


async def _notifications(db, user_id):
    result = await db.execute(select(Notification).where(Notification.user_id == user_id))
    return result.scalars().all()


async def test_create_contract_debits_client_and_opens_escrow(db, funded_contract, parties):
    client, freelancer, job, _ = parties

    assert funded_contract.status == "active"
    assert funded_contract.calculated_deadline is not None
    assert await LedgerService(db).get_balance(client.user_id) == Decimal("600")
    assert (await JobRepository(db).get_job_by_id(job.job_id)).status == "in_progress"
    assert [n.type for n in await _notifications(db, client.user_id)] == ["contract_created"]
    assert [n.type for n in await _notifications(db, freelancer.user_id)] == ["contract_created"]


async def test_create_contract_with_insufficient_balance(db, contract_service, make_user, make_job, make_proposal):
    client = await make_user("client", balance="100")
    freelancer = await make_user("freelancer")
    job = await make_job(client)
    proposal = await make_proposal(job, freelancer)
    data = ContractCreate(job_id=job.job_id, proposal_id=proposal.proposal_id,
                          freelancer_id=freelancer.user_id, agreed_amount=Decimal("400"))

    with pytest.raises(InsufficientFundsError) as exc_info:
        await contract_service.create_contract(data, client)

    assert exc_info.value.shortfall == Decimal("300")
    assert await LedgerService(db).get_balance(client.user_id) == Decimal("100")


async def test_one_contract_per_proposal(contract_service, funded_contract, parties):
    client, freelancer, job, proposal = parties
    data = ContractCreate(job_id=job.job_id, proposal_id=proposal.proposal_id,
                          freelancer_id=freelancer.user_id, agreed_amount=Decimal("100"))
    with pytest.raises(InvalidStateError):
        await contract_service.create_contract(data, client)


async def test_create_contract_requires_accepted_proposal(contract_service, make_user, make_job, make_proposal):
    client = await make_user("client", balance="1000")
    freelancer = await make_user("freelancer")
    job = await make_job(client)
    proposal = await make_proposal(job, freelancer, status="pending")
    data = ContractCreate(job_id=job.job_id, proposal_id=proposal.proposal_id,
                          freelancer_id=freelancer.user_id, agreed_amount=Decimal("100"))
    with pytest.raises(InvalidStateError):
        await contract_service.create_contract(data, client)


async def test_accept_deliverable_end_to_end(db, hub, mailer, make_socket, contract_service, funded_contract, parties):
    client, freelancer, _, _ = parties
    freelancer_socket = make_socket()
    hub.register(freelancer.user_id, freelancer_socket)
    before = {n.notification_id for u in (client, freelancer) for n in await _notifications(db, u.user_id)}

    deliverable, contract = await contract_service.submit_work(
        funded_contract.contract_id, freelancer, "First version", ["site.zip"]
    )
    assert deliverable.status == "pending_review"
    assert contract.pending_deliverable_id == deliverable.deliverable_id

    deliverable, contract, payout = await contract_service.review_work(
        contract.contract_id, deliverable.deliverable_id, client, "accept"
    )

    assert deliverable.status == "accepted"
    assert contract.status == "completed"
    assert contract.pending_deliverable_id is None
    assert payout == Decimal("360")

    escrow = await PaymentRepository(db).get_latest_escrow(contract.contract_id)
    assert escrow.status == "released"
    assert escrow.net_amount + escrow.platform_fee == escrow.amount

    ledger = LedgerService(db)
    assert await ledger.get_balance(freelancer.user_id) == Decimal("360")
    assert await ledger.get_balance(client.user_id) == Decimal("600")

    await db.refresh(client)
    await db.refresh(freelancer)
    assert freelancer.completed_jobs == 1
    assert client.completed_jobs_as_client == 1

    created = [
        n for u in (client, freelancer) for n in await _notifications(db, u.user_id)
        if n.notification_id not in before and n.type != "deliverable_submitted"
    ]
    assert sorted(n.user_id for n in created) == sorted([client.user_id, freelancer.user_id])

    assert freelancer_socket.events("payment_released")[0]["amount"] == 360.0
    assert freelancer_socket.events("deliverable_accepted")
    assert any(m["to"] == freelancer.email for m in mailer.sent)


async def test_submit_while_pending_review_is_rejected(contract_service, funded_contract, parties):
    _, freelancer, _, _ = parties
    await contract_service.submit_work(funded_contract.contract_id, freelancer, "v1")
    with pytest.raises(InvalidStateError):
        await contract_service.submit_work(funded_contract.contract_id, freelancer, "v2")


async def test_request_revision_needs_note_and_frees_slot(contract_service, funded_contract, parties):
    client, freelancer, _, _ = parties
    deliverable, _ = await contract_service.submit_work(funded_contract.contract_id, freelancer, "v1")

    with pytest.raises(InvalidArgumentError):
        await contract_service.review_work(funded_contract.contract_id, deliverable.deliverable_id, client,
                                           "request_revision", "   ")

    reviewed, contract, payout = await contract_service.review_work(
        funded_contract.contract_id, deliverable.deliverable_id, client, "request_revision", "Fix the footer"
    )
    assert reviewed.status == "revision_requested"
    assert reviewed.revision_note == "Fix the footer"
    assert contract.status == "active"
    assert contract.pending_deliverable_id is None
    assert payout is None

    second, _ = await contract_service.submit_work(funded_contract.contract_id, freelancer, "v2")
    assert second.status == "pending_review"


async def test_unknown_review_action(contract_service, funded_contract, parties):
    client, freelancer, _, _ = parties
    deliverable, _ = await contract_service.submit_work(funded_contract.contract_id, freelancer, "v1")
    with pytest.raises(InvalidArgumentError):
        await contract_service.review_work(funded_contract.contract_id, deliverable.deliverable_id, client, "maybe")


async def test_completed_contract_is_terminal(db, contract_service, funded_contract, parties):
    client, freelancer, _, _ = parties
    contract = await contract_service.complete_contract(funded_contract.contract_id, client)
    assert contract.status == "completed"

    with pytest.raises(InvalidStateError):
        await contract_service.submit_work(contract.contract_id, freelancer, "late work")
    with pytest.raises(InvalidStateError):
        await contract_service.update_hours_worked(contract.contract_id, freelancer, Decimal("3"))
    with pytest.raises(InvalidStateError):
        await contract_service.complete_contract(contract.contract_id, client)
    with pytest.raises(InvalidStateError):
        await EscrowService(db).adjust_escrow(contract.contract_id, Decimal("10"))

    # 第二次完成不會重複撥款
    assert await LedgerService(db).get_balance(freelancer.user_id) == Decimal("360")


async def test_guard_order_is_existence_then_authorization_then_state(contract_service, funded_contract,
                                                                       parties, make_user):
    client, freelancer, _, _ = parties
    stranger = await make_user("freelancer")

    with pytest.raises(NotFoundError):
        await contract_service.submit_work("missing-contract", stranger, "")
    with pytest.raises(ForbiddenError):
        await contract_service.submit_work(funded_contract.contract_id, stranger, "")

    await contract_service.complete_contract(funded_contract.contract_id, client)
    # 已完成的合約：非當事人仍然先得到 Forbidden
    with pytest.raises(ForbiddenError):
        await contract_service.submit_work(funded_contract.contract_id, stranger, "")
    # 當事人得到 InvalidState (不是參數錯誤)
    with pytest.raises(InvalidStateError):
        await contract_service.submit_work(funded_contract.contract_id, freelancer, "")


async def test_update_hours_only_for_hourly_contracts(contract_service, funded_contract, parties):
    _, freelancer, _, _ = parties
    with pytest.raises(InvalidStateError):
        await contract_service.update_hours_worked(funded_contract.contract_id, freelancer, Decimal("2"))


async def test_update_hours_overwrites(db, contract_service, make_user, make_job, make_proposal):
    client = await make_user("client", balance="500")
    freelancer = await make_user("freelancer")
    job = await make_job(client)
    proposal = await make_proposal(job, freelancer)
    contract = await contract_service.create_contract(ContractCreate(
        job_id=job.job_id, proposal_id=proposal.proposal_id, freelancer_id=freelancer.user_id,
        agreed_amount=Decimal("200"), budget_type="hourly",
    ), client)

    await contract_service.update_hours_worked(contract.contract_id, freelancer, Decimal("5"))
    contract = await contract_service.update_hours_worked(contract.contract_id, freelancer, Decimal("3.5"))
    assert contract.hours_worked == Decimal("3.5")

    with pytest.raises(InvalidArgumentError):
        await contract_service.update_hours_worked(contract.contract_id, freelancer, Decimal("-1"))


async def test_get_contract_is_party_scoped(contract_service, funded_contract, parties, make_user):
    client, _, _, _ = parties
    stranger = await make_user("client")
    admin = await make_user("admin")

    assert (await contract_service.get_contract(funded_contract.contract_id, client)).contract_id == funded_contract.contract_id
    assert await contract_service.get_contract(funded_contract.contract_id, admin)
    with pytest.raises(ForbiddenError):
        await contract_service.get_contract(funded_contract.contract_id, stranger)


async def test_release_failure_leaves_contract_completed_and_escrow_held(db, mailer, contract_service,
                                                                         funded_contract, parties, monkeypatch):
    client, freelancer, job, _ = parties
    contract_id = funded_contract.contract_id
    client_id, freelancer_id, job_id = client.user_id, freelancer.user_id, job.job_id
    emails = {client.email, freelancer.email}
    mailer.sent.clear()

    async def failing_credit(user_id, amount, count_as_earnings=False):
        await contract_service.user_repo.get_user_by_id(user_id)
        raise RuntimeError("ledger unavailable")

    monkeypatch.setattr(contract_service.ledger, "credit", failing_credit)
    contract = await contract_service.complete_contract(contract_id, client)

    assert contract.status == "completed"
    assert contract.completed_at is not None
    escrow = await PaymentRepository(db).get_latest_escrow(contract_id)
    assert escrow.status == "held"
    assert escrow.amount == Decimal("400")
    assert await LedgerService(db).get_balance(freelancer_id) == Decimal("0")

    # 撥款之前的步驟與通知照常完成
    assert (await JobRepository(db).get_job_by_id(job_id)).status == "completed"
    assert (await UserRepository(db).get_user_by_id(freelancer_id)).completed_jobs == 1
    [completed] = [n for n in await _notifications(db, freelancer_id) if n.type == "contract_completed"]
    assert completed.content == "合約已完成"
    assert "contract_completed" in [n.type for n in await _notifications(db, client_id)]
    assert {m["to"] for m in mailer.sent} == emails


@pytest.mark.parametrize("finish, final_status", [("complete", "completed"), ("terminate", "terminated")])
async def test_finished_contract_rejects_every_mutation(db, hub, mailer, contract_service, funded_contract,
                                                        parties, make_user, finish, final_status):
    client, freelancer, _, _ = parties
    admin = await make_user("admin")
    contract_id = funded_contract.contract_id
    if finish == "complete":
        await contract_service.complete_contract(contract_id, client)
    else:
        await contract_service.admin_cancel_contract(contract_id, admin, "Dispute")

    ledger = LedgerService(db)
    balances = (await ledger.get_balance(client.user_id), await ledger.get_balance(freelancer.user_id))
    modifications = ModificationService(db, presence=hub, mailer=mailer)
    attempts = {
        "submit_work": lambda: contract_service.submit_work(contract_id, freelancer, "late work"),
        "review_work": lambda: contract_service.review_work(contract_id, "any-deliverable", client, "accept"),
        "update_hours": lambda: contract_service.update_hours_worked(contract_id, freelancer, Decimal("3")),
        "complete": lambda: contract_service.complete_contract(contract_id, client),
        "admin_complete": lambda: contract_service.admin_complete_contract(contract_id, admin),
        "admin_cancel": lambda: contract_service.admin_cancel_contract(contract_id, admin),
        "admin_amount": lambda: contract_service.admin_update_contract_amount(contract_id, admin, Decimal("500")),
        "request_modification": lambda: modifications.request_modification(ModificationCreate(
            contract_id=contract_id, modification_type="budget", requested_budget=Decimal("500"), reason="More"
        ), freelancer),
        "adjust_escrow": lambda: EscrowService(db).adjust_escrow(contract_id, Decimal("10")),
    }
    for name, attempt in attempts.items():
        with pytest.raises(InvalidStateError):
            await attempt()

    stored = await ContractRepository(db).get_contract_by_id(contract_id)
    assert stored.status == final_status
    assert (await ledger.get_balance(client.user_id), await ledger.get_balance(freelancer.user_id)) == balances


async def test_complete_closes_pending_deliverable(db, contract_service, funded_contract, parties):
    client, freelancer, _, _ = parties
    deliverable, _ = await contract_service.submit_work(funded_contract.contract_id, freelancer, "final files")

    contract = await contract_service.complete_contract(funded_contract.contract_id, client)

    assert contract.status == "completed"
    assert contract.pending_deliverable_id is None
    stored = await ContractRepository(db).get_deliverable(contract.contract_id, deliverable.deliverable_id)
    assert stored.status == "accepted"
    assert stored.reviewed_by == client.user_id
    # 沒有經過驗收流程，工作者收到的是合約完成通知
    assert "deliverable_accepted" not in [n.type for n in await _notifications(db, freelancer.user_id)]
