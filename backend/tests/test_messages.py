"""Tests fuer den Message-Store: Senden, Bearbeiten, Soft-Delete, Paging."""
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from parley.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from parley.models.base import Base
from parley.models.message import Message
from parley.models.search_sync import STATE_PENDING_DELETE, STATE_PENDING_UPSERT
from parley.repositories import ReactionRepository, SearchSyncRepository
from parley.services.conversations import ConversationService
from parley.services.messages import MessageService
from parley.services.reactions import ReactionLedger
from tests.conftest import auth_headers, create_user


async def _pair(session_maker, db_session):
    alice = await create_user(session_maker, "alice", "Alice")
    bob = await create_user(session_maker, "bob", "Bob")
    conversation = await ConversationService(db_session).get_or_create(alice, bob)
    return alice, bob, conversation.id


@pytest.mark.asyncio
async def test_send_message(session_maker, db_session, publisher):
    alice, bob, conversation_id = await _pair(session_maker, db_session)

    out = await MessageService(db_session, publisher).send(conversation_id, alice, body="hello")
    assert out.body == "hello"
    assert out.author_id == alice
    assert out.edited is False
    assert out.deleted is False

    # Outbox-Eintrag entsteht in derselben Transaktion
    task = await SearchSyncRepository(db_session).get(out.id)
    assert task.state == STATE_PENDING_UPSERT

    assert publisher.types() == ["MessageCreated"]
    payload = publisher.events[0][1]
    assert set(payload["recipient_ids"]) == {alice, bob}
    assert payload["message"]["body"] == "hello"


@pytest.mark.asyncio
async def test_send_requires_body_or_image(session_maker, db_session):
    alice, _, conversation_id = await _pair(session_maker, db_session)
    service = MessageService(db_session)

    with pytest.raises(ValidationError):
        await service.send(conversation_id, alice)
    with pytest.raises(ValidationError):
        await service.send(conversation_id, alice, body="   ")

    image_only = await service.send(conversation_id, alice, image_ref="images/1.png")
    assert image_only.body is None
    assert image_only.image_ref == "images/1.png"


@pytest.mark.asyncio
async def test_send_too_long(session_maker, db_session, monkeypatch):
    monkeypatch.setattr("parley.config.settings.max_message_length", 10)
    alice, _, conversation_id = await _pair(session_maker, db_session)
    with pytest.raises(ValidationError):
        await MessageService(db_session).send(conversation_id, alice, body="x" * 11)


@pytest.mark.asyncio
async def test_send_non_participant(session_maker, db_session):
    _, _, conversation_id = await _pair(session_maker, db_session)
    carol = await create_user(session_maker, "carol")
    with pytest.raises(AuthorizationError):
        await MessageService(db_session).send(conversation_id, carol, body="Hallo?")


@pytest.mark.asyncio
async def test_reply_target_must_exist_in_conversation(session_maker, db_session):
    alice, bob, conversation_id = await _pair(session_maker, db_session)
    carol = await create_user(session_maker, "carol")
    other = await ConversationService(db_session).get_or_create(alice, carol)
    service = MessageService(db_session)

    foreign = await service.send(other.id, carol, body="anderswo")
    with pytest.raises(NotFoundError):
        await service.send(conversation_id, bob, body="re", reply_to_id=foreign.id)
    with pytest.raises(NotFoundError):
        await service.send(conversation_id, bob, body="re", reply_to_id=9999)


@pytest.mark.asyncio
async def test_reply_to_deleted_message_keeps_link_without_content(session_maker, db_session):
    alice, bob, conversation_id = await _pair(session_maker, db_session)
    service = MessageService(db_session)

    gone = await service.send(conversation_id, alice, body="gleich weg")
    await service.delete(gone.id, alice)

    reply = await service.send(conversation_id, bob, body="re", reply_to_id=gone.id)
    assert reply.reply_to.message_id == gone.id
    assert reply.reply_to.author_name == "Alice"
    assert reply.reply_to.content is None
    assert reply.reply_to.original_deleted is True

    page = await service.page(conversation_id, bob)
    listed = next(m for m in page.messages if m.id == reply.id)
    assert listed.reply_to.content is None
    assert listed.reply_to.original_deleted is True


@pytest.mark.asyncio
async def test_reply_snapshot_is_truncated(session_maker, db_session, monkeypatch):
    monkeypatch.setattr("parley.config.settings.reply_snapshot_length", 5)
    alice, bob, conversation_id = await _pair(session_maker, db_session)
    service = MessageService(db_session)

    original = await service.send(conversation_id, alice, body="hello world")
    reply = await service.send(conversation_id, bob, body="hi", reply_to_id=original.id)
    assert reply.reply_to.message_id == original.id
    assert reply.reply_to.author_name == "Alice"
    assert reply.reply_to.content == "hello"


@pytest.mark.asyncio
async def test_edit_message(session_maker, db_session, publisher):
    alice, bob, conversation_id = await _pair(session_maker, db_session)
    service = MessageService(db_session, publisher)
    sent = await service.send(conversation_id, alice, body="Original")

    edited = await service.edit(sent.id, alice, "Bearbeitet")
    assert edited.body == "Bearbeitet"
    assert edited.edited is True
    assert publisher.types() == ["MessageCreated", "MessageEdited"]

    with pytest.raises(AuthorizationError):
        await service.edit(sent.id, bob, "Fremd")
    with pytest.raises(ValidationError):
        await service.edit(sent.id, alice, "")
    with pytest.raises(NotFoundError):
        await service.edit(9999, alice, "x")


@pytest.mark.asyncio
async def test_delete_then_edit_conflicts_and_delete_is_noop(session_maker, db_session, publisher):
    alice, _, conversation_id = await _pair(session_maker, db_session)
    service = MessageService(db_session, publisher)
    sent = await service.send(conversation_id, alice, body="Zu loeschen", image_ref="img/a.png")

    assert await service.delete(sent.id, alice) is True
    task = await SearchSyncRepository(db_session).get(sent.id)
    assert task.state == STATE_PENDING_DELETE

    with pytest.raises(ConflictError):
        await service.edit(sent.id, alice, "zu spaet")

    # Zweites Loeschen ist ein No-Op ohne Event
    assert await service.delete(sent.id, alice) is False
    assert publisher.types() == ["MessageCreated", "MessageDeleted"]


@pytest.mark.asyncio
async def test_delete_by_non_author(session_maker, db_session):
    alice, bob, conversation_id = await _pair(session_maker, db_session)
    service = MessageService(db_session)
    sent = await service.send(conversation_id, alice, body="meins")
    with pytest.raises(AuthorizationError):
        await service.delete(sent.id, bob)
    with pytest.raises(NotFoundError):
        await service.delete(9999, alice)


@pytest.mark.asyncio
async def test_page_newest_first(session_maker, db_session, monkeypatch):
    monkeypatch.setattr("parley.config.settings.max_page_size", 3)
    alice, bob, conversation_id = await _pair(session_maker, db_session)
    service = MessageService(db_session)
    for i in range(5):
        await service.send(conversation_id, alice, body=f"Nachricht {i}")

    first = await service.page(conversation_id, bob, 0, 100)
    assert first.size == 3
    assert [m.body for m in first.messages] == ["Nachricht 4", "Nachricht 3", "Nachricht 2"]

    second = await service.page(conversation_id, bob, 1, 3)
    assert [m.body for m in second.messages] == ["Nachricht 1", "Nachricht 0"]

    assert (await service.page(conversation_id, bob, 5, 3)).messages == []
    assert (await service.page(conversation_id, bob, 0, 0)).size == 1
    with pytest.raises(ValidationError):
        await service.page(conversation_id, bob, -1, 3)


@pytest.mark.asyncio
async def test_scenario_reply_snapshot_survives_edit_and_delete(session_maker, db_session):
    """Senden, Antworten, Bearbeiten, Reagieren, Loeschen: Snapshot bleibt erhalten."""
    user1 = await create_user(session_maker, "user1", "User Eins")
    user2 = await create_user(session_maker, "user2", "User Zwei")
    conversation = await ConversationService(db_session).get_or_create(user1, user2)
    conversation_id = conversation.id
    messages = MessageService(db_session)

    hello = await messages.send(conversation_id, user1, body="hello")
    reply = await messages.send(conversation_id, user2, body="hi!", reply_to_id=hello.id)
    await messages.edit(hello.id, user1, "hello (edited)")
    await ReactionLedger(db_session).add(hello.id, user2, "👍")
    await messages.delete(hello.id, user1)

    page = await messages.page(conversation_id, user2, 0, 10)
    by_id = {m.id: m for m in page.messages}

    deleted = by_id[hello.id]
    assert deleted.deleted is True
    assert deleted.body is None
    assert deleted.reactions == []

    # Reaktion existiert weiter, wird aber nicht angezeigt
    stored = await ReactionRepository(db_session).for_messages([hello.id])
    assert len(stored) == 1

    snapshot = by_id[reply.id].reply_to
    assert snapshot.content == "hello"
    assert snapshot.author_name == "User Eins"
    assert snapshot.original_deleted is True


@pytest_asyncio.fixture
async def file_session_maker(tmp_path):
    """Datei-basierte DB, damit zwei Sessions getrennte Verbindungen haben."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'primary.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.mark.asyncio
async def test_concurrent_edit_loses_with_conflict(file_session_maker):
    alice = await create_user(file_session_maker, "alice")
    bob = await create_user(file_session_maker, "bob")
    async with file_session_maker() as setup:
        conversation = await ConversationService(setup).get_or_create(alice, bob)
        sent = await MessageService(setup).send(conversation.id, alice, body="v1")
        message_id = sent.id

    async with file_session_maker() as first, file_session_maker() as second:
        # Beide lesen dieselbe Version; die Referenz haelt die veraltete Kopie in der Session
        stale = await second.get(Message, message_id)
        assert stale.body == "v1"
        await MessageService(first).edit(message_id, alice, "v2")
        with pytest.raises(ConflictError):
            await MessageService(second).edit(message_id, alice, "v3")


@pytest.mark.asyncio
async def test_concurrent_delete_after_delete_is_noop(file_session_maker):
    alice = await create_user(file_session_maker, "alice")
    bob = await create_user(file_session_maker, "bob")
    async with file_session_maker() as setup:
        conversation = await ConversationService(setup).get_or_create(alice, bob)
        sent = await MessageService(setup).send(conversation.id, alice, body="weg")
        message_id = sent.id

    async with file_session_maker() as first, file_session_maker() as second:
        stale = await second.get(Message, message_id)
        assert await MessageService(first).delete(message_id, alice) is True
        assert await MessageService(second).delete(message_id, alice) is False
        assert stale.deleted is True


@pytest.mark.asyncio
async def test_concurrent_delete_loses_to_edit_with_conflict(file_session_maker):
    alice = await create_user(file_session_maker, "alice")
    bob = await create_user(file_session_maker, "bob")
    async with file_session_maker() as setup:
        conversation = await ConversationService(setup).get_or_create(alice, bob)
        sent = await MessageService(setup).send(conversation.id, alice, body="v1")
        message_id = sent.id

    async with file_session_maker() as first, file_session_maker() as second:
        stale = await second.get(Message, message_id)
        assert stale.deleted is False
        await MessageService(first).edit(message_id, alice, "v2")
        with pytest.raises(ConflictError):
            await MessageService(second).delete(message_id, alice)

    async with file_session_maker() as check:
        current = await check.get(Message, message_id)
        assert current.deleted is False
        assert current.body == "v2"


@pytest.mark.asyncio
async def test_message_api_flow(client, session_maker):
    alice = await create_user(session_maker, "alice")
    bob = await create_user(session_maker, "bob")
    resp = await client.post(
        "/api/conversations/",
        json={"recipient_id": str(bob)},
        headers=auth_headers(alice),
    )
    conversation_id = resp.json()["id"]

    resp = await client.post(
        f"/api/conversations/{conversation_id}/messages",
        json={"body": "Hallo Welt!"},
        headers=auth_headers(alice),
    )
    assert resp.status_code == 201
    message_id = resp.json()["id"]

    resp = await client.post(
        f"/api/conversations/{conversation_id}/messages",
        json={},
        headers=auth_headers(alice),
    )
    assert resp.status_code == 422

    resp = await client.patch(
        f"/api/messages/{message_id}",
        json={"body": "Bearbeitet"},
        headers=auth_headers(bob),
    )
    assert resp.status_code == 403

    resp = await client.patch(
        f"/api/messages/{message_id}",
        json={"body": "Bearbeitet"},
        headers=auth_headers(alice),
    )
    assert resp.status_code == 200
    assert resp.json()["edited"] is True

    resp = await client.delete(f"/api/messages/{message_id}", headers=auth_headers(alice))
    assert resp.status_code == 204
    resp = await client.delete(f"/api/messages/{message_id}", headers=auth_headers(alice))
    assert resp.status_code == 204

    resp = await client.patch(
        f"/api/messages/{message_id}",
        json={"body": "nochmal"},
        headers=auth_headers(alice),
    )
    assert resp.status_code == 409

    resp = await client.get(
        f"/api/conversations/{conversation_id}/messages?page=0&size=10",
        headers=auth_headers(bob),
    )
    assert resp.status_code == 200
    [message] = resp.json()["messages"]
    assert message["deleted"] is True
    assert message["body"] is None

    resp = await client.delete("/api/messages/9999", headers=auth_headers(alice))
    assert resp.status_code == 404
