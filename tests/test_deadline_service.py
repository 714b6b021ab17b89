from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from app.repositories.contract_repo import ContractRepository
from app.schemas.contract_schema import ContractCreate
from app.services.deadline_service import (
    DeadlineService, TimeProgress, calculate_time_progress, due_milestones
)

START = datetime(2026, 3, 1)
DEADLINE = START + timedelta(days=10)


@pytest.mark.parametrize("elapsed_days, expected", [
    (4.0, []),
    (5.0, ["50%"]),
    (6.0, []),
    (7.5, ["75%"]),
    (9.0, ["90%", "24h"]),
    (9.2, ["90%", "24h"]),
    (9.6, ["24h"]),
    (10.5, []),
])
def test_due_milestones(elapsed_days, expected):
    progress = calculate_time_progress(START, DEADLINE, START + timedelta(days=elapsed_days))
    assert due_milestones(progress, []) == expected


def test_already_sent_milestones_are_skipped():
    progress = TimeProgress(percentage_elapsed=92, days_remaining=1, hours_remaining=20, is_overdue=False)
    assert due_milestones(progress, ["90%"]) == ["24h"]
    assert due_milestones(progress, ["90%", "24h"]) == []


def test_time_progress_rounding():
    progress = calculate_time_progress(START, DEADLINE, START + timedelta(days=5, hours=12))
    assert progress.percentage_elapsed == 55
    assert progress.days_remaining == 5
    assert progress.hours_remaining == 108
    assert progress.is_overdue is False

    assert calculate_time_progress(None, DEADLINE, START) is None
    assert calculate_time_progress(START, START, START) is None


async def test_reminders_are_sent_once(db, hub, mailer, make_socket, funded_contract, parties, monkeypatch):
    client, freelancer, _, _ = parties
    contract = funded_contract
    now = contract.start_date + timedelta(days=5, hours=12)
    monkeypatch.setattr("app.services.deadline_service.utcnow", lambda: now)
    freelancer_socket = make_socket()
    hub.register(freelancer.user_id, freelancer_socket)
    mailer.sent.clear()

    service = DeadlineService(db, presence=hub, mailer=mailer)
    assert await service.check_contract_deadlines() == 1
    assert await service.check_contract_deadlines() == 0

    stored = await ContractRepository(db).get_contract_by_id(contract.contract_id)
    assert stored.deadline_warnings_sent == ["50%"]

    [pushed] = freelancer_socket.events("deadline_reminder")
    assert pushed["milestone"] == "50%"
    assert pushed["days_remaining"] == 5
    assert sorted(m["to"] for m in mailer.sent) == sorted([client.email, freelancer.email])


async def test_overdue_and_finished_contracts_are_ignored(db, hub, mailer, contract_service, funded_contract,
                                                          parties, monkeypatch):
    client, _, _, _ = parties
    service = DeadlineService(db, presence=hub, mailer=mailer)

    late = funded_contract.start_date + timedelta(days=11)
    monkeypatch.setattr("app.services.deadline_service.utcnow", lambda: late)
    assert await service.check_contract_deadlines() == 0

    await contract_service.complete_contract(funded_contract.contract_id, client)
    near_end = funded_contract.start_date + timedelta(days=9, hours=12)
    monkeypatch.setattr("app.services.deadline_service.utcnow", lambda: near_end)
    assert await service.check_contract_deadlines() == 0


async def test_failed_reminder_does_not_stop_other_contracts(db, hub, mailer, contract_service, funded_contract,
                                                             make_user, make_job, make_proposal, monkeypatch):
    client = await make_user("client", balance="500")
    freelancer = await make_user("freelancer")
    job = await make_job(client, title="Second job")
    proposal = await make_proposal(job, freelancer)
    other = await contract_service.create_contract(ContractCreate(
        job_id=job.job_id, proposal_id=proposal.proposal_id, freelancer_id=freelancer.user_id,
        agreed_amount=Decimal("200"), agreed_delivery_time=10,
    ), client)
    broken_id, other_id = funded_contract.contract_id, other.contract_id
    now = funded_contract.start_date + timedelta(days=5, hours=12)
    monkeypatch.setattr("app.services.deadline_service.utcnow", lambda: now)

    service = DeadlineService(db, presence=hub, mailer=mailer)
    original = service.contract_repo.set_deadline_warnings

    async def locked_for_one(contract_id, warnings):
        if contract_id == broken_id:
            await service.contract_repo.get_contract_by_id(contract_id)
            raise RuntimeError("row locked")
        return await original(contract_id, warnings)

    monkeypatch.setattr(service.contract_repo, "set_deadline_warnings", locked_for_one)
    assert await service.check_contract_deadlines() == 1

    repo = ContractRepository(db)
    assert (await repo.get_contract_by_id(broken_id)).deadline_warnings_sent == []
    assert (await repo.get_contract_by_id(other_id)).deadline_warnings_sent == ["50%"]
