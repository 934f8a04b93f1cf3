"""Message Mutation Engine.

Applies create / react / mark-read / edit / delete / clear to message
records and fans the result out through the Conversation Router.

Every operation follows the same shape:

    input -> authorization -> store write -> broadcast

Broadcasts only happen after the write succeeded. An actor that is not
allowed to perform an operation gets a MutationRejected and the record is
left untouched. A message id that does not resolve (unknown or malformed)
makes the operation a no-op that returns None.

Per-message read-modify-write is atomic: mutations of one message id run
one at a time under a KeyedLock, and the store's optimistic version check
catches writers outside this process. A stale write is re-read and
re-applied once.
"""
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, Optional

from chatsync.store import DELETED_NOTICE, Message, Reaction, StaleRecordError

from .errors import MutationRejected, PersistenceError
from .persistence import StoreGateway
from .rooms import ConversationRouter, conversation_key

logger = logging.getLogger(__name__)

# Attempts for a read-modify-write that loses the optimistic version check
MAX_MUTATION_ATTEMPTS = 2


class KeyedLock:
    """One asyncio.Lock per key, discarded when nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


Mutation = Callable[[Message], Optional[Message]]


class MessageMutationEngine:
    """Authorized, concurrency-safe mutations of message records."""

    def __init__(self, gateway: StoreGateway, rooms: ConversationRouter) -> None:
        self._gateway = gateway
        self._rooms = rooms
        self._locks = KeyedLock()

    # =========================================================================
    # Operations
    # =========================================================================

    async def create(
        self, sender: str, receiver: str, body: str, tag: Optional[str] = None
    ) -> Message:
        """Store a new unread message and broadcast ``newMessage``."""
        key = conversation_key(sender, receiver)
        message = Message(sender=sender, receiver=receiver, body=body, tag=tag or None)
        message.id = await self._gateway.insert_message(message)
        logger.info("[Engine] %s -> %s: message %s", sender, receiver, message.id)

        await self._rooms.broadcast(key, {"type": "newMessage", "message": message.model_dump()})
        return message

    async def react(self, message_id: str, identity: str, emoji: str) -> Optional[Message]:
        """Toggle, replace or add ``identity``'s reaction on a message."""

        def apply(message: Message) -> Message:
            if not message.is_participant(identity):
                raise MutationRejected("react", "not_participant")
            if message.deleted:
                raise MutationRejected("react", "deleted")

            reactions = list(message.reactions)
            for index, reaction in enumerate(reactions):
                if reaction.identity != identity:
                    continue
                if reaction.emoji == emoji:
                    del reactions[index]
                else:
                    reactions[index] = Reaction(identity=identity, emoji=emoji)
                break
            else:
                reactions.append(Reaction(identity=identity, emoji=emoji))
            return message.model_copy(update={"reactions": reactions})

        return await self._mutate("react", message_id, apply)

    async def mark_read(self, identity_a: str, identity_b: str) -> int:
        """Mark everything ``identity_b`` sent to ``identity_a`` as read.

        Sends one directed ``refresh`` to ``identity_b`` (nothing if offline).

        Returns:
            Number of messages flipped to read.
        """
        updated = await self._gateway.bulk_set_read(identity_a, identity_b)
        logger.info("[Engine] %s read %d message(s) from %s", identity_a, updated, identity_b)
        await self._rooms.notify(identity_b, {"type": "refresh"})
        return updated

    async def edit(self, message_id: str, identity: str, new_body: str) -> Optional[Message]:
        """Replace the body of a message. Sender only; deleted messages are frozen."""

        def apply(message: Message) -> Message:
            if identity != message.sender:
                raise MutationRejected("edit", "not_sender")
            if message.deleted:
                raise MutationRejected("edit", "deleted")
            return message.model_copy(
                update={"body": new_body, "edited": True, "editedAt": time.time()}
            )

        return await self._mutate("edit", message_id, apply)

    async def delete(self, message_id: str, identity: str) -> Optional[Message]:
        """Soft-delete a message. Sender or receiver only."""

        def apply(message: Message) -> Optional[Message]:
            if not message.is_participant(identity):
                raise MutationRejected("delete", "not_participant")
            if message.deleted:
                return None
            return message.model_copy(
                update={"deleted": True, "deletedBy": identity, "body": DELETED_NOTICE}
            )

        return await self._mutate("delete", message_id, apply)

    async def clear_conversation(self, identity_a: str, identity_b: str) -> int:
        """Remove every message between the pair and broadcast ``cleared``.

        The caller must already be authorized for the pair.
        """
        key = conversation_key(identity_a, identity_b)
        removed = await self._gateway.bulk_delete_between(identity_a, identity_b)
        logger.info("[Engine] Cleared %d message(s) in %s", removed, key)
        await self._rooms.broadcast(key, {"type": "cleared", "conversationKey": key})
        return removed

    # =========================================================================
    # Internal
    # =========================================================================

    async def _mutate(
        self, operation: str, message_id: str, apply: Mutation
    ) -> Optional[Message]:
        async with self._locks.hold(message_id):
            for attempt in range(1, MAX_MUTATION_ATTEMPTS + 1):
                message = await self._gateway.find_message_by_id(message_id)
                if message is None:
                    logger.debug("[Engine] %s skipped, no message %r", operation, message_id)
                    return None

                updated = apply(message)
                if updated is None:
                    return None

                try:
                    saved = await self._gateway.save_message(updated)
                except StaleRecordError as exc:
                    if attempt < MAX_MUTATION_ATTEMPTS:
                        logger.info("[Engine] %s on %s lost a race, re-reading", operation, message_id)
                        continue
                    raise PersistenceError(operation, exc) from exc
                break

        key = conversation_key(saved.sender, saved.receiver)
        await self._rooms.broadcast(key, {"type": "messageUpdated", "message": saved.model_dump()})
        return saved
