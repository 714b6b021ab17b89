from decimal import Decimal

import pytest

from app.core.exceptions import ForbiddenError, InsufficientFundsError, InvalidStateError
from app.repositories.job_repo import JobRepository
from app.repositories.payment_repo import PaymentRepository
from app.schemas.modification_schema import ModificationCreate
from app.services.ledger_service import LedgerService
from app.services.modification_service import ModificationService


@pytest.fixture
async def admin(make_user):
    return await make_user("admin")


async def test_admin_cancel_refunds_escrow_and_reopens_job(db, contract_service, funded_contract, parties, admin):
    client, _, job, _ = parties

    contract = await contract_service.admin_cancel_contract(funded_contract.contract_id, admin, "Dispute")

    assert contract.status == "terminated"
    assert contract.terminated_at is not None
    escrow = await PaymentRepository(db).get_latest_escrow(contract.contract_id)
    assert escrow.status == "refunded"
    assert escrow.refund_reason == "Dispute"
    assert await LedgerService(db).get_balance(client.user_id) == Decimal("1000")
    assert (await JobRepository(db).get_job_by_id(job.job_id)).status == "open"


async def test_admin_cancel_twice_is_invalid_state(db, contract_service, funded_contract, admin, parties):
    client, _, _, _ = parties
    await contract_service.admin_cancel_contract(funded_contract.contract_id, admin)
    with pytest.raises(InvalidStateError):
        await contract_service.admin_cancel_contract(funded_contract.contract_id, admin)
    assert await LedgerService(db).get_balance(client.user_id) == Decimal("1000")


async def test_admin_cancel_clears_pending_modification(db, hub, mailer, contract_service, funded_contract,
                                                        parties, admin):
    _, freelancer, _, _ = parties
    modifications = ModificationService(db, presence=hub, mailer=mailer)
    request = await modifications.request_modification(ModificationCreate(
        contract_id=funded_contract.contract_id, modification_type="budget",
        requested_budget=Decimal("450"), reason="more work",
    ), freelancer)

    await contract_service.admin_cancel_contract(funded_contract.contract_id, admin)

    request = await modifications.get_request(request.request_id, admin)
    assert request.status == "cancelled"
    assert request.pending_for_contract_id is None


async def test_non_admin_cannot_cancel_or_complete(contract_service, funded_contract, parties):
    client, _, _, _ = parties
    with pytest.raises(ForbiddenError):
        await contract_service.admin_cancel_contract(funded_contract.contract_id, client)
    with pytest.raises(ForbiddenError):
        await contract_service.admin_complete_contract(funded_contract.contract_id, client)


async def test_admin_complete_uses_the_same_release(db, contract_service, funded_contract, parties, admin):
    client, freelancer, _, _ = parties
    contract = await contract_service.admin_complete_contract(funded_contract.contract_id, admin)

    assert contract.status == "completed"
    assert await LedgerService(db).get_balance(freelancer.user_id) == Decimal("360")
    escrow = await PaymentRepository(db).get_latest_escrow(contract.contract_id)
    assert escrow.status == "released"

    with pytest.raises(InvalidStateError):
        await contract_service.admin_cancel_contract(contract.contract_id, admin)


async def test_admin_amount_update_moves_difference_through_ledger(db, contract_service, funded_contract,
                                                                   parties, admin):
    client, _, _, _ = parties

    contract = await contract_service.admin_update_contract_amount(
        funded_contract.contract_id, admin, Decimal("450"), "Extra page"
    )
    assert contract.agreed_amount == Decimal("450")
    assert contract.amount_history[-1].reason == "Extra page"
    assert await LedgerService(db).get_balance(client.user_id) == Decimal("550")

    contract = await contract_service.admin_update_contract_amount(funded_contract.contract_id, admin, Decimal("350"))
    assert await LedgerService(db).get_balance(client.user_id) == Decimal("650")
    escrow = await PaymentRepository(db).get_held_escrow(contract.contract_id)
    assert escrow.amount == Decimal("350")
    assert escrow.platform_fee == Decimal("35")
    assert len(contract.amount_history) == 2


async def test_admin_amount_update_checks_balance(db, contract_service, funded_contract, parties, admin):
    client, _, _, _ = parties
    with pytest.raises(InsufficientFundsError):
        await contract_service.admin_update_contract_amount(funded_contract.contract_id, admin, Decimal("1100"))
    assert await LedgerService(db).get_balance(client.user_id) == Decimal("600")


async def test_admin_lists(contract_service, funded_contract, admin, parties):
    client, _, _, _ = parties
    contracts = await contract_service.list_all_contracts(admin, status="active")
    assert [c.contract_id for c in contracts] == [funded_contract.contract_id]
    with pytest.raises(ForbiddenError):
        await contract_service.list_all_contracts(client)
