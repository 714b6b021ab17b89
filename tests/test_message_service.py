from datetime import datetime, timedelta

import pytest

from app.core.exceptions import ForbiddenError, InvalidArgumentError, InvalidStateError, NotFoundError
from app.models.notification import Notification
from app.schemas.message_schema import ConversationCreate
from app.services.message_service import MessageService
from sqlalchemy.future import select


class Clock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float) -> None:
        self.now += timedelta(minutes=minutes)


@pytest.fixture
def clock(monkeypatch):
    clock = Clock(datetime(2026, 3, 1, 9, 0, 0))
    monkeypatch.setattr("app.services.message_service.utcnow", clock)
    return clock


@pytest.fixture
def messages(db, hub):
    return MessageService(db, presence=hub)


@pytest.fixture
async def conversation(messages, parties):
    client, freelancer, job, proposal = parties
    return await messages.create_or_get_conversation(
        ConversationCreate(job_id=job.job_id, participant_id=freelancer.user_id, proposal_id=proposal.proposal_id),
        client,
    )


async def test_conversation_is_created_once_per_pair(messages, conversation, parties):
    client, freelancer, job, _ = parties
    again = await messages.create_or_get_conversation(
        ConversationCreate(job_id=job.job_id, participant_id=client.user_id), freelancer
    )
    assert again.conversation_id == conversation.conversation_id
    assert sorted(conversation.participant_ids) == sorted([client.user_id, freelancer.user_id])


async def test_conversation_validation(messages, parties, make_user, make_job, make_proposal):
    client, freelancer, job, _ = parties
    with pytest.raises(NotFoundError):
        await messages.create_or_get_conversation(
            ConversationCreate(job_id="missing", participant_id=freelancer.user_id), client)
    with pytest.raises(InvalidArgumentError):
        await messages.create_or_get_conversation(
            ConversationCreate(job_id=job.job_id, participant_id=client.user_id), client)

    other_job = await make_job(client, title="Other")
    other_proposal = await make_proposal(other_job, freelancer)
    with pytest.raises(InvalidArgumentError) as exc_info:
        await messages.create_or_get_conversation(ConversationCreate(
            job_id=job.job_id, participant_id=freelancer.user_id, proposal_id=other_proposal.proposal_id,
        ), client)
    assert exc_info.value.extra["fields"] == ["proposal_id"]


async def test_response_time_skips_same_sender_and_uses_half_up(db, messages, conversation, parties, clock):
    client, freelancer, _, _ = parties
    cid = conversation.conversation_id

    await messages.send_message(cid, client, "Hi, are you available?")
    clock.advance(0.5)
    await messages.send_message(cid, client, "It is about the landing page")
    clock.advance(2.5)
    await messages.send_message(cid, freelancer, "Yes I am")

    await db.refresh(freelancer)
    assert (freelancer.response_time, freelancer.response_time_count) == (3, 1)

    clock.advance(1)
    await messages.send_message(cid, client, "Great")
    clock.advance(10)
    await messages.send_message(cid, freelancer, "Sending a quote")

    await db.refresh(freelancer)
    # round((3 + 10) / 2) = round(6.5) -> 7
    assert (freelancer.response_time, freelancer.response_time_count) == (7, 2)


async def test_reply_outside_window_is_not_counted(db, messages, conversation, parties, clock):
    client, freelancer, _, _ = parties
    await messages.send_message(conversation.conversation_id, client, "ping")
    clock.advance(60 * 25)
    await messages.send_message(conversation.conversation_id, freelancer, "sorry, was away")

    await db.refresh(freelancer)
    assert freelancer.response_time_count == 0


async def test_delivery_receipt_when_recipient_online(messages, conversation, parties, hub, make_socket, clock):
    client, freelancer, _, _ = parties
    client_socket, freelancer_socket = make_socket(), make_socket()
    client_session = hub.register(client.user_id, client_socket)
    freelancer_session = hub.register(freelancer.user_id, freelancer_socket)
    for session in (client_session, freelancer_session):
        await messages.handle_socket_event(session, client if session == client_session else freelancer,
                                           "join_conversation", {"conversation_id": conversation.conversation_id})

    message = await messages.send_message(conversation.conversation_id, client, "hello")

    assert message.is_delivered is True
    assert message.delivered_at == clock.now
    assert client_socket.events("messageDelivered")[0]["message_id"] == message.message_id
    assert freelancer_socket.events("new_message")[0]["message_id"] == message.message_id
    assert freelancer_socket.events("new_message_notification")


async def test_no_delivery_receipt_when_recipient_offline(messages, conversation, parties, hub, make_socket, clock):
    client, _, _, _ = parties
    client_socket = make_socket()
    hub.register(client.user_id, client_socket)

    message = await messages.send_message(conversation.conversation_id, client, "hello")

    assert message.is_delivered is False
    assert client_socket.events("messageDelivered") == []


async def test_send_validation(messages, conversation, parties, make_user):
    client, _, _, _ = parties
    stranger = await make_user("freelancer")
    with pytest.raises(NotFoundError):
        await messages.send_message("missing", client, "hi")
    with pytest.raises(ForbiddenError):
        await messages.send_message(conversation.conversation_id, stranger, "hi")
    with pytest.raises(InvalidArgumentError):
        await messages.send_message(conversation.conversation_id, client, "   ")

    message = await messages.send_message(conversation.conversation_id, client, "", ["brief.pdf"])
    assert message.attachments == ["brief.pdf"]


async def test_edit_window(messages, conversation, parties, clock):
    client, freelancer, _, _ = parties
    message = await messages.send_message(conversation.conversation_id, client, "draft")

    clock.advance(4.9)
    edited = await messages.edit_message(message.message_id, client, "final")
    assert edited.content == "final"
    assert edited.is_edited is True

    with pytest.raises(ForbiddenError):
        await messages.edit_message(message.message_id, freelancer, "hijack")

    clock.advance(0.1)
    with pytest.raises(InvalidStateError):
        await messages.edit_message(message.message_id, client, "too late")
    with pytest.raises(ForbiddenError):
        await messages.edit_message(message.message_id, freelancer, "still not yours")


async def test_read_receipts(messages, conversation, parties, hub, make_socket, clock):
    client, freelancer, _, _ = parties
    client_socket = make_socket()
    hub.register(client.user_id, client_socket)

    first = await messages.send_message(conversation.conversation_id, client, "one")
    await messages.send_message(conversation.conversation_id, client, "two")

    with pytest.raises(ForbiddenError):
        await messages.mark_message_read(first.message_id, client)

    read = await messages.mark_message_read(first.message_id, freelancer)
    assert read.is_read is True
    read_again = await messages.mark_message_read(first.message_id, freelancer)
    assert read_again.read_at == read.read_at

    assert await messages.get_unread_total(freelancer) == 1
    assert await messages.mark_conversation_read(conversation.conversation_id, freelancer) == 1
    assert await messages.get_unread_total(freelancer) == 0
    assert len(client_socket.events("messageRead")) == 2


async def test_muted_participant_gets_no_notification(db, messages, conversation, parties, clock):
    client, freelancer, _, _ = parties
    flags = await messages.toggle_mute(conversation.conversation_id, freelancer)
    assert flags["is_muted"] is True

    await messages.send_message(conversation.conversation_id, client, "quiet please")

    result = await db.execute(select(Notification).where(Notification.user_id == freelancer.user_id))
    assert result.scalars().all() == []

    await messages.toggle_mute(conversation.conversation_id, freelancer)
    await messages.send_message(conversation.conversation_id, client, "now you hear me")
    result = await db.execute(select(Notification).where(Notification.user_id == freelancer.user_id))
    assert [n.type for n in result.scalars().all()] == ["new_message"]


async def test_archive_hides_conversation_and_history_pages(messages, conversation, parties, clock):
    client, freelancer, _, _ = parties
    for i in range(3):
        await messages.send_message(conversation.conversation_id, client, f"m{i}")
        clock.advance(0.1)

    page, total = await messages.get_messages(conversation.conversation_id, freelancer, page=1, limit=2)
    assert total == 3
    assert [m.content for m in page] == ["m1", "m2"]

    rows = await messages.list_my_conversations(freelancer)
    assert [(c.conversation_id, unread) for c, unread in rows] == [(conversation.conversation_id, 3)]

    await messages.toggle_archive(conversation.conversation_id, freelancer)
    assert await messages.list_my_conversations(freelancer) == []
    assert len(await messages.list_my_conversations(freelancer, include_archived=True)) == 1
    assert len(await messages.list_my_conversations(client)) == 1


async def test_delete_message_only_by_sender(messages, conversation, parties, clock):
    client, freelancer, _, _ = parties
    message = await messages.send_message(conversation.conversation_id, client, "oops")
    with pytest.raises(ForbiddenError):
        await messages.delete_message(message.message_id, freelancer)
    await messages.delete_message(message.message_id, client)
    with pytest.raises(NotFoundError):
        await messages.edit_message(message.message_id, client, "gone")


async def test_response_time_failure_keeps_message_and_sender_usable(db, messages, conversation, parties,
                                                                      clock, monkeypatch):
    client, freelancer, _, _ = parties
    cid = conversation.conversation_id
    client_id, freelancer_id = client.user_id, freelancer.user_id
    client_name = client.display_name
    await messages.send_message(cid, freelancer, "hello")
    clock.advance(2)

    async def failing_update(conversation_id, sender_id):
        await messages.user_repo.get_user_by_id(sender_id)
        raise RuntimeError("response time table locked")

    monkeypatch.setattr(messages, "_update_response_time", failing_update)
    message = await messages.send_message(cid, client, "reply after a failure")

    assert message.content == "reply after a failure"
    assert message.sender_id == client_id
    # 發送者物件在 rollback 之後仍可使用
    assert client.user_id == client_id
    result = await db.execute(select(Notification).where(Notification.user_id == freelancer_id))
    [notification] = result.scalars().all()
    assert notification.title == f"{client_name} 傳送了新訊息"
    assert notification.related_user_id == client_id


async def test_flag_message_records_each_reason_once(db, messages, conversation, parties, make_user, clock):
    client, freelancer, _, _ = parties
    message = await messages.send_message(conversation.conversation_id, freelancer, "pay me outside the site")

    with pytest.raises(InvalidArgumentError) as exc_info:
        await messages.flag_message(message.message_id, client, "   ")
    assert exc_info.value.extra["fields"] == ["reason"]
    with pytest.raises(NotFoundError):
        await messages.flag_message("missing-message", client, "spam")
    stranger = await make_user("client")
    with pytest.raises(ForbiddenError):
        await messages.flag_message(message.message_id, stranger, "spam")

    first = await messages.flag_message(message.message_id, client, "off-platform payment")
    again = await messages.flag_message(message.message_id, client, "off-platform payment")
    other_reason = await messages.flag_message(message.message_id, client, "rude")

    assert first["is_flagged"] is True and first["newly_flagged"] is True
    assert again["newly_flagged"] is False
    assert other_reason["newly_flagged"] is True

    stored = await messages.message_repo.get_message_by_id(message.message_id)
    assert stored.is_flagged is True
    stored_conversation = await messages.message_repo.get_conversation_by_id(conversation.conversation_id)
    assert stored_conversation.has_flagged_messages is True
    assert len(await messages.message_repo.list_flags_for_conversation(conversation.conversation_id)) == 2


async def test_admin_reported_conversations_group_flags_by_reporter(messages, conversation, parties,
                                                                    make_user, make_job, clock):
    client, freelancer, _, _ = parties
    admin = await make_user("admin")
    quiet_job = await make_job(client, title="Quiet job")
    quiet = await messages.create_or_get_conversation(
        ConversationCreate(job_id=quiet_job.job_id, participant_id=freelancer.user_id), client
    )
    await messages.send_message(quiet.conversation_id, client, "nothing to see")
    clock.advance(1)

    hello = await messages.send_message(conversation.conversation_id, client, "hello")
    clock.advance(1)
    bad = await messages.send_message(conversation.conversation_id, freelancer, "send money by wire")
    await messages.flag_message(bad.message_id, client, "scam")
    await messages.flag_message(bad.message_id, client, "off-platform payment")
    await messages.flag_message(bad.message_id, admin, "scam")

    with pytest.raises(ForbiddenError):
        await messages.list_reported_conversations(client)

    [reported] = await messages.list_reported_conversations(admin)
    assert reported["conversation_id"] == conversation.conversation_id
    assert reported["message_count"] == 2

    by_user = {p["user_id"]: p for p in reported["participants"]}
    assert [m["message_id"] for m in by_user[client.user_id]["messages"]] == [hello.message_id]
    [flagged] = by_user[freelancer.user_id]["messages"]
    assert flagged["is_flagged"] is True
    reporters = {f["user_id"]: f for f in flagged["flagged_by"]}
    assert reporters[client.user_id]["reasons"] == ["scam", "off-platform payment"]
    assert reporters[client.user_id]["email"] == client.email
    assert reporters[admin.user_id]["reasons"] == ["scam"]
    assert by_user[freelancer.user_id]["role"] == "freelancer"

    everything = await messages.list_all_conversations(admin)
    assert [c.conversation_id for c in everything] == [conversation.conversation_id, quiet.conversation_id]
    with pytest.raises(ForbiddenError):
        await messages.list_all_conversations(freelancer)


async def test_deleting_flagged_message_removes_its_flags(messages, conversation, parties, clock):
    client, freelancer, _, _ = parties
    message = await messages.send_message(conversation.conversation_id, freelancer, "regret this")
    await messages.flag_message(message.message_id, client, "rude")

    await messages.delete_message(message.message_id, freelancer)

    assert await messages.message_repo.list_flags_for_conversation(conversation.conversation_id) == []
