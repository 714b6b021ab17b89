from app.core.websocket_manager import conversation_room, user_room
from app.schemas.message_schema import ConversationCreate
from app.services.message_service import MessageService


async def test_connect_accepts_and_joins_user_room(hub, make_socket):
    socket = make_socket()
    session = await hub.connect("u1", socket)

    assert socket.accepted
    assert hub.is_online("u1")
    assert session in hub.room_members(user_room("u1"))
    assert hub.user_of(session) == "u1"


async def test_multiple_sessions_per_user(hub, make_socket):
    first = hub.register("u1", make_socket())
    assert hub.is_first_session("u1")
    second = hub.register("u1", make_socket())
    assert not hub.is_first_session("u1")

    assert hub.disconnect(first) is None
    assert hub.is_online("u1")
    assert hub.disconnect(second) == "u1"
    assert not hub.is_online("u1")
    assert hub.disconnect(second) is None


async def test_room_emit_excludes_session_and_survives_broken_socket(hub, make_socket):
    good, broken, sender = make_socket(), make_socket(fail=True), make_socket()
    room = conversation_room("c1")
    sessions = [hub.register(uid, ws) for uid, ws in (("a", good), ("b", broken), ("c", sender))]
    for session in sessions:
        hub.join(session, room)

    sent = await hub.emit_to_room(room, "user_typing", {"user_id": "c"}, exclude_session=sessions[2])

    assert sent == 1
    assert good.events("user_typing") == [{"user_id": "c"}]
    assert sender.sent == []


async def test_leave_and_disconnect_clean_rooms(hub, make_socket):
    session = hub.register("u1", make_socket())
    hub.join(session, conversation_room("c1"))
    hub.leave(session, conversation_room("c1"))
    assert hub.room_members(conversation_room("c1")) == set()

    hub.join(session, conversation_room("c2"))
    hub.disconnect(session)
    assert hub.room_members(conversation_room("c2")) == set()


async def test_broadcast_skips_excluded_user(hub, make_socket):
    mine, theirs = make_socket(), make_socket()
    hub.register("me", mine)
    hub.register("them", theirs)

    assert await hub.broadcast("user_online", {"user_id": "me"}, exclude_user="me") == 1
    assert mine.sent == []
    assert theirs.events("user_online") == [{"user_id": "me"}]


async def test_presence_lifecycle_updates_user_row(db, hub, make_user, make_socket):
    alice = await make_user("client")
    bob = await make_user("freelancer")
    service = MessageService(db, presence=hub)
    bob_socket = make_socket()
    bob_session = hub.register(bob.user_id, bob_socket)
    await service.handle_connect(bob, bob_session)

    alice_socket = make_socket()
    alice_session = hub.register(alice.user_id, alice_socket)
    await service.handle_connect(alice, alice_session)

    await db.refresh(alice)
    assert alice.is_online is True
    assert bob_socket.events("user_online") == [{"user_id": alice.user_id}]
    assert sorted(alice_socket.events("online_users")[0]) == sorted([alice.user_id, bob.user_id])

    # 第二個連線不再廣播上線
    second = hub.register(alice.user_id, make_socket())
    await service.handle_connect(alice, second)
    assert len(bob_socket.events("user_online")) == 1

    await service.handle_disconnect(second)
    assert bob_socket.events("user_offline") == []
    await service.handle_disconnect(alice_session)
    offline = bob_socket.events("user_offline")
    assert offline[0]["user_id"] == alice.user_id

    await db.refresh(alice)
    assert alice.is_online is False
    assert alice.last_seen is not None


async def test_socket_events(db, hub, make_user, make_socket, parties):
    client, freelancer, job, _ = parties
    service = MessageService(db, presence=hub)
    conversation = await service.create_or_get_conversation(
        ConversationCreate(job_id=job.job_id, participant_id=freelancer.user_id), client
    )
    client_socket, freelancer_socket = make_socket(), make_socket()
    client_session = hub.register(client.user_id, client_socket)
    freelancer_session = hub.register(freelancer.user_id, freelancer_socket)
    cid = conversation.conversation_id

    await service.handle_socket_event(client_session, client, "join_conversation", {"conversation_id": cid})
    await service.handle_socket_event(freelancer_session, freelancer, "join_conversation", {"conversation_id": cid})
    await service.handle_socket_event(client_session, client, "typing", {"conversation_id": cid, "is_typing": True})
    assert freelancer_socket.events("user_typing")[0]["user_id"] == client.user_id
    assert client_socket.events("user_typing") == []

    await service.handle_socket_event(client_session, client, "send_message",
                                      {"conversation_id": cid, "content": "over the socket"})
    assert freelancer_socket.events("new_message")[0]["content"] == "over the socket"

    stranger = await make_user("freelancer")
    stranger_socket = make_socket()
    stranger_session = hub.register(stranger.user_id, stranger_socket)
    await service.handle_socket_event(stranger_session, stranger, "join_conversation", {"conversation_id": cid})
    assert stranger_socket.events("error")
    assert stranger_session not in hub.room_members(conversation_room(cid))

    await service.handle_socket_event(client_session, client, "dance", {})
    assert client_socket.events("error")

    await service.handle_socket_event(client_session, client, "update_status", {"is_online": False})
    assert freelancer_socket.events("user_status_changed")[0]["is_online"] is False


async def test_socket_error_after_rollback_keeps_session_usable(db, hub, make_socket, parties, monkeypatch):
    client, freelancer, job, _ = parties
    service = MessageService(db, presence=hub)
    conversation = await service.create_or_get_conversation(
        ConversationCreate(job_id=job.job_id, participant_id=freelancer.user_id), client
    )
    cid = conversation.conversation_id
    client_id = client.user_id
    client_socket = make_socket()
    client_session = hub.register(client_id, client_socket)

    async def broken_set_presence(user_id, is_online, last_seen=None):
        await service.user_repo.get_user_by_id(user_id)
        raise RuntimeError("connection reset")

    monkeypatch.setattr(service.user_repo, "set_presence", broken_set_presence)
    await service.handle_socket_event(client_session, client, "update_status", {"is_online": False})

    [error] = client_socket.events("error")
    assert error["event"] == "update_status"
    assert error["message"] == "connection reset"
    # 同一個 user 物件在 rollback 之後仍可用於下一個事件
    assert client.user_id == client_id
    await service.handle_socket_event(client_session, client, "join_conversation", {"conversation_id": cid})
    assert client_session in hub.room_members(conversation_room(cid))


async def test_socket_send_message_with_bad_payload(db, hub, make_socket, parties):
    client, freelancer, job, _ = parties
    service = MessageService(db, presence=hub)
    conversation = await service.create_or_get_conversation(
        ConversationCreate(job_id=job.job_id, participant_id=freelancer.user_id), client
    )
    cid = conversation.conversation_id
    client_socket, freelancer_socket = make_socket(), make_socket()
    client_session = hub.register(client.user_id, client_socket)
    freelancer_session = hub.register(freelancer.user_id, freelancer_socket)
    await service.handle_socket_event(client_session, client, "join_conversation", {"conversation_id": cid})
    await service.handle_socket_event(freelancer_session, freelancer, "join_conversation", {"conversation_id": cid})

    await service.handle_socket_event(client_session, client, "send_message", {"content": "where does this go"})

    [error] = client_socket.events("error")
    assert error["event"] == "send_message"
    assert error["success"] is False
    assert error["fields"] == ["conversation_id"]

    await service.handle_socket_event(client_session, client, "send_message",
                                      {"conversation_id": cid, "content": "second try"})
    assert [m["content"] for m in freelancer_socket.events("new_message")] == ["second try"]
