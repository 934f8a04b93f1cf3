"""Tests for the MessageMutationEngine and its store gateway.

Uses the real in-memory RecordStore and a ConversationRouter with fake
sockets, so every test checks both the stored record and what each
participant was sent.
"""
import asyncio
import time

import pytest
import pytest_asyncio

from chatsync.chat.engine import KeyedLock, MessageMutationEngine
from chatsync.chat.errors import MutationRejected, PersistenceError
from chatsync.chat.persistence import StoreGateway
from chatsync.chat.presence import PresenceRegistry
from chatsync.chat.rooms import ConversationRouter, conversation_key
from chatsync.store import DELETED_NOTICE, Message, Reaction

from conftest import FakeWebSocket


class Harness:
    """Engine wired to a real store with alice and bob joined to their conversation."""

    def __init__(self, store) -> None:
        self.store = store
        self.presence = PresenceRegistry()
        self.rooms = ConversationRouter(self.presence)
        self.gateway = StoreGateway(store, timeout_seconds=2.0)
        self.engine = MessageMutationEngine(self.gateway, self.rooms)
        self.sockets = {}

    async def online(self, identity: str, join_with: str = None) -> FakeWebSocket:
        ws = FakeWebSocket()
        connection_id = f"conn-{identity}"
        await self.rooms.register(connection_id, ws)
        await self.presence.associate(identity, connection_id)
        if join_with:
            await self.rooms.join(connection_id, conversation_key(identity, join_with))
        self.sockets[identity] = ws
        return ws


@pytest.fixture
def harness(record_store):
    return Harness(record_store)


@pytest_asyncio.fixture
async def joined(harness):
    await harness.online("alice", join_with="bob")
    await harness.online("bob", join_with="alice")
    return harness


# ---------------------------------------------------------------------------
# create
# ---------------------------------------------------------------------------


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_stores_unread_and_broadcasts(self, joined):
        message = await joined.engine.create("alice", "bob", "hi")

        stored = joined.store.find_message_by_id(message.id)
        assert stored.body == "hi"
        assert stored.read is False
        assert stored.tag is None

        for identity in ("alice", "bob"):
            event = joined.sockets[identity].last("newMessage")
            assert event["message"]["id"] == message.id
            assert event["message"]["body"] == "hi"

    @pytest.mark.asyncio
    async def test_create_with_tag(self, joined):
        message = await joined.engine.create("bob", "alice", "look", tag="important")
        assert joined.store.find_message_by_id(message.id).tag == "important"

    @pytest.mark.asyncio
    async def test_create_does_not_reach_other_conversations(self, joined):
        carol = await joined.online("carol", join_with="dave")
        await joined.engine.create("alice", "bob", "private")
        assert carol.of_type("newMessage") == []


# ---------------------------------------------------------------------------
# react
# ---------------------------------------------------------------------------


class TestReact:
    @pytest.mark.asyncio
    async def test_toggle_then_replace(self, joined):
        """👍, 👍 again (toggle off), then 👎 leaves exactly one reaction."""
        message = await joined.engine.create("alice", "bob", "hi")

        first = await joined.engine.react(message.id, "alice", "👍")
        assert first.reactions == [Reaction(identity="alice", emoji="👍")]

        second = await joined.engine.react(message.id, "alice", "👍")
        assert second.reactions == []

        third = await joined.engine.react(message.id, "alice", "👎")
        assert third.reactions == [Reaction(identity="alice", emoji="👎")]

        stored = joined.store.find_message_by_id(message.id)
        assert stored.reactions == [Reaction(identity="alice", emoji="👎")]
        assert len(joined.sockets["bob"].of_type("messageUpdated")) == 3

    @pytest.mark.asyncio
    async def test_different_emoji_replaces_in_place(self, joined):
        message = await joined.engine.create("alice", "bob", "hi")
        await joined.engine.react(message.id, "alice", "🎉")
        await joined.engine.react(message.id, "bob", "❤️")
        updated = await joined.engine.react(message.id, "alice", "😂")

        assert updated.reactions == [
            Reaction(identity="alice", emoji="😂"),
            Reaction(identity="bob", emoji="❤️"),
        ]

    @pytest.mark.asyncio
    async def test_non_participant_rejected(self, joined):
        message = await joined.engine.create("alice", "bob", "hi")
        before = joined.store.find_message_by_id(message.id)

        with pytest.raises(MutationRejected) as info:
            await joined.engine.react(message.id, "mallory", "👍")

        assert info.value.reason == "not_participant"
        assert joined.store.find_message_by_id(message.id) == before

    @pytest.mark.asyncio
    async def test_react_on_deleted_rejected(self, joined):
        message = await joined.engine.create("alice", "bob", "hi")
        await joined.engine.delete(message.id, "alice")

        with pytest.raises(MutationRejected) as info:
            await joined.engine.react(message.id, "bob", "👍")
        assert info.value.reason == "deleted"

    @pytest.mark.asyncio
    async def test_concurrent_reactions_both_survive(self, joined):
        message = await joined.engine.create("alice", "bob", "hi")

        await asyncio.gather(
            joined.engine.react(message.id, "alice", "👍"),
            joined.engine.react(message.id, "bob", "🔥"),
        )

        stored = joined.store.find_message_by_id(message.id)
        assert {(r.identity, r.emoji) for r in stored.reactions} == {
            ("alice", "👍"), ("bob", "🔥"),
        }
        assert stored.version == 2

    @pytest.mark.asyncio
    async def test_stale_write_is_reapplied(self, joined):
        """A writer outside the engine bumps the version between read and save."""
        message = await joined.engine.create("alice", "bob", "hi")
        store = joined.store
        original_find = joined.gateway.find_message_by_id
        calls = {"n": 0}

        async def find_then_interfere(message_id):
            found = await original_find(message_id)
            calls["n"] += 1
            if calls["n"] == 1:
                outside = store.find_message_by_id(message_id)
                store.save_message(outside.model_copy(update={"tag": "outside"}))
            return found

        joined.gateway.find_message_by_id = find_then_interfere

        updated = await joined.engine.react(message.id, "bob", "👍")

        assert calls["n"] == 2
        assert updated.tag == "outside"
        assert updated.reactions == [Reaction(identity="bob", emoji="👍")]


# ---------------------------------------------------------------------------
# edit / delete
# ---------------------------------------------------------------------------


class TestEdit:
    @pytest.mark.asyncio
    async def test_sender_edit(self, joined):
        message = await joined.engine.create("alice", "bob", "hi")
        before = time.time()

        updated = await joined.engine.edit(message.id, "alice", "hello")

        assert updated.body == "hello"
        assert updated.edited is True
        assert updated.editedAt >= before
        event = joined.sockets["bob"].last("messageUpdated")
        assert event["message"]["body"] == "hello"

    @pytest.mark.parametrize("intruder", ["bob", "mallory"])
    @pytest.mark.asyncio
    async def test_non_sender_edit_leaves_record_unchanged(self, joined, intruder):
        message = await joined.engine.create("alice", "bob", "hi")
        before = joined.store.find_message_by_id(message.id).model_dump()

        with pytest.raises(MutationRejected) as info:
            await joined.engine.edit(message.id, intruder, "pwned")

        assert info.value.reason == "not_sender"
        assert joined.store.find_message_by_id(message.id).model_dump() == before
        assert joined.sockets["bob"].of_type("messageUpdated") == []

    @pytest.mark.asyncio
    async def test_edit_missing_message_is_noop(self, joined):
        assert await joined.engine.edit("does-not-exist", "alice", "x") is None
        assert joined.sockets["alice"].of_type("messageUpdated") == []

    @pytest.mark.asyncio
    async def test_edit_deleted_message_rejected(self, joined):
        message = await joined.engine.create("alice", "bob", "hi")
        await joined.engine.delete(message.id, "bob")

        with pytest.raises(MutationRejected) as info:
            await joined.engine.edit(message.id, "alice", "back")

        assert info.value.reason == "deleted"
        assert joined.store.find_message_by_id(message.id).body == DELETED_NOTICE


class TestDelete:
    @pytest.mark.parametrize("actor", ["alice", "bob"])
    @pytest.mark.asyncio
    async def test_participant_delete(self, joined, actor):
        message = await joined.engine.create("alice", "bob", "secret")

        updated = await joined.engine.delete(message.id, actor)

        assert updated.deleted is True
        assert updated.deletedBy == actor
        assert updated.body == DELETED_NOTICE
        stored = joined.store.find_message_by_id(message.id)
        assert stored.deleted is True
        assert stored.sender == "alice"
        assert stored.receiver == "bob"

    @pytest.mark.asyncio
    async def test_third_party_delete_rejected(self, joined):
        message = await joined.engine.create("alice", "bob", "secret")
        before = joined.store.find_message_by_id(message.id)

        with pytest.raises(MutationRejected):
            await joined.engine.delete(message.id, "mallory")

        assert joined.store.find_message_by_id(message.id) == before

    @pytest.mark.asyncio
    async def test_second_delete_is_noop(self, joined):
        message = await joined.engine.create("alice", "bob", "secret")
        await joined.engine.delete(message.id, "alice")

        assert await joined.engine.delete(message.id, "bob") is None
        assert joined.store.find_message_by_id(message.id).deletedBy == "alice"

    @pytest.mark.asyncio
    async def test_malformed_id_is_noop(self, joined):
        assert await joined.engine.delete("", "alice") is None


# ---------------------------------------------------------------------------
# mark read / clear
# ---------------------------------------------------------------------------


class TestMarkRead:
    @pytest.mark.asyncio
    async def test_marks_subset_and_refreshes_sender(self, joined):
        incoming = await joined.engine.create("alice", "bob", "hi")
        outgoing = await joined.engine.create("bob", "alice", "hey")

        count = await joined.engine.mark_read("bob", "alice")

        assert count == 1
        assert joined.store.find_message_by_id(incoming.id).read is True
        assert joined.store.find_message_by_id(outgoing.id).read is False
        assert joined.sockets["alice"].of_type("refresh") == [{"type": "refresh"}]
        assert joined.sockets["bob"].of_type("refresh") == []

    @pytest.mark.asyncio
    async def test_offline_sender_gets_no_refresh(self, harness):
        bob = await harness.online("bob")
        await harness.engine.create("alice", "bob", "hi")

        assert await harness.engine.mark_read("bob", "alice") == 1
        assert bob.of_type("refresh") == []


class TestClear:
    @pytest.mark.asyncio
    async def test_clear_removes_all_and_notifies_both(self, joined):
        await joined.engine.create("alice", "bob", "one")
        await joined.engine.create("bob", "alice", "two")

        removed = await joined.engine.clear_conversation("bob", "alice")

        assert removed == 2
        assert joined.store.find_messages_between("alice", "bob") == []
        key = conversation_key("alice", "bob")
        for identity in ("alice", "bob"):
            assert joined.sockets[identity].last("cleared") == {
                "type": "cleared", "conversationKey": key,
            }


# ---------------------------------------------------------------------------
# Store gateway failure policy
# ---------------------------------------------------------------------------


class TestGateway:
    @pytest.mark.asyncio
    async def test_timeout_fails_without_retry(self, record_store):
        calls = []

        def slow(*args):
            calls.append(args)
            time.sleep(0.3)

        gateway = StoreGateway(record_store, timeout_seconds=0.05, retry_once=True)
        with pytest.raises(PersistenceError):
            await gateway._call("slow", slow)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_error_retried_once(self, record_store):
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("transient")
            return "ok"

        gateway = StoreGateway(record_store, timeout_seconds=1.0, retry_once=True)
        assert await gateway._call("flaky", flaky) == "ok"
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_error_without_retry(self, record_store):
        def broken():
            raise RuntimeError("down")

        gateway = StoreGateway(record_store, timeout_seconds=1.0, retry_once=False)
        with pytest.raises(PersistenceError) as info:
            await gateway._call("broken", broken)
        assert isinstance(info.value.cause, RuntimeError)

    @pytest.mark.asyncio
    async def test_failed_write_broadcasts_nothing(self, joined, monkeypatch):
        def down(*args):
            raise RuntimeError("store unavailable")

        monkeypatch.setattr(joined.store, "insert_message", down)

        with pytest.raises(PersistenceError):
            await joined.engine.create("alice", "bob", "lost")
        assert joined.sockets["bob"].of_type("newMessage") == []


@pytest.mark.asyncio
async def test_keyed_lock_releases_keys():
    locks = KeyedLock()
    order = []

    async def worker(n):
        async with locks.hold("m1"):
            order.append(("start", n))
            await asyncio.sleep(0)
            order.append(("end", n))

    await asyncio.gather(worker(1), worker(2))

    assert order == [("start", 1), ("end", 1), ("start", 2), ("end", 2)]
    assert len(locks) == 0


class TestTimedOutWrites:
    @pytest.mark.asyncio
    async def test_timed_out_insert_leaves_no_row(self, record_store, monkeypatch):
        real_insert = record_store.insert_message

        def slow_insert(message):
            time.sleep(0.3)
            return real_insert(message)

        monkeypatch.setattr(record_store, "insert_message", slow_insert)
        gateway = StoreGateway(record_store, timeout_seconds=0.05, retry_once=True)

        with pytest.raises(PersistenceError):
            await gateway.insert_message(Message(sender="alice", receiver="bob", body="ghost"))
        await asyncio.sleep(0.5)

        assert record_store.find_messages_between("alice", "bob") == []

    @pytest.mark.asyncio
    async def test_timed_out_create_is_invisible_to_both(self, joined, monkeypatch):
        real_insert = joined.store.insert_message

        def slow_insert(message):
            time.sleep(0.3)
            return real_insert(message)

        monkeypatch.setattr(joined.store, "insert_message", slow_insert)
        joined.gateway.timeout_seconds = 0.05

        with pytest.raises(PersistenceError):
            await joined.engine.create("alice", "bob", "ghost")
        await asyncio.sleep(0.5)

        assert joined.sockets["alice"].of_type("newMessage") == []
        assert joined.sockets["bob"].of_type("newMessage") == []
        assert joined.store.find_messages_between("alice", "bob") == []
