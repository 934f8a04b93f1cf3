"""Conversation Router: canonical conversation keys and broadcast groups.

A conversation between two identities always maps to the same key,
whichever of them is named first. Connections join the group for a key
explicitly; group membership is never inferred from message content.

Delivery uses asyncio.gather() for concurrent sends. A connection whose
send fails is dropped from the router (and from all of its groups).
"""
import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Set

from fastapi import WebSocket

from .presence import PresenceRegistry

logger = logging.getLogger(__name__)

KEY_SEPARATOR = ":"


def conversation_key(identity_a: str, identity_b: str) -> str:
    """Order-independent key for the conversation between two identities.

    >>> conversation_key("bob", "alice") == conversation_key("alice", "bob")
    True
    """
    if not identity_a or not identity_b:
        raise ValueError("conversation key needs two non-empty identities")
    first, second = sorted((identity_a, identity_b))
    return f"{first}{KEY_SEPARATOR}{second}"


class ConversationRouter:
    """Owns live connections and their conversation group membership."""

    def __init__(self, presence: PresenceRegistry) -> None:
        self._presence = presence
        self._lock = asyncio.Lock()
        # connection id -> WebSocket
        self._connections: Dict[str, WebSocket] = {}
        # conversation key -> connection ids
        self._groups: Dict[str, Set[str]] = {}
        # connection id -> conversation keys it joined
        self._memberships: Dict[str, Set[str]] = {}

    # =========================================================================
    # Membership
    # =========================================================================

    async def register(self, connection_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            self._connections[connection_id] = websocket
            self._memberships.setdefault(connection_id, set())

    async def unregister(self, connection_id: str) -> None:
        async with self._lock:
            self._drop(connection_id)

    async def join(self, connection_id: str, key: str) -> bool:
        """Add a connection to a conversation group.

        Returns:
            False if the connection is not registered.
        """
        async with self._lock:
            if connection_id not in self._connections:
                return False
            self._groups.setdefault(key, set()).add(connection_id)
            self._memberships[connection_id].add(key)
        logger.debug("[Rooms] %s joined %s", connection_id, key)
        return True

    def group_members(self, key: str) -> Set[str]:
        return set(self._groups.get(key, ()))

    def groups_of(self, connection_id: str) -> Set[str]:
        return set(self._memberships.get(connection_id, ()))

    def connection_count(self) -> int:
        return len(self._connections)

    # =========================================================================
    # Delivery
    # =========================================================================

    async def broadcast(
        self, key: str, event: dict, exclude: Optional[str] = None
    ) -> int:
        """Deliver an event to every connection joined to ``key``.

        Args:
            key: Conversation key.
            event: JSON-serializable event.
            exclude: Connection id to skip (e.g. the typing sender).

        Returns:
            Number of connections the event reached.
        """
        targets = [c for c in self._groups.get(key, ()) if c != exclude]
        return await self._deliver(targets, event)

    async def notify(self, identity: str, event: dict) -> int:
        """Deliver an event only to the connections logged in as ``identity``."""
        targets = self._presence.connections_of(identity)
        if not targets:
            logger.debug("[Rooms] notify skipped, %s offline", identity)
            return 0
        return await self._deliver(targets, event)

    async def broadcast_global(self, event: dict) -> int:
        """Deliver an event to every live connection."""
        return await self._deliver(list(self._connections), event)

    async def send_to(self, connection_id: str, event: dict) -> bool:
        return await self._deliver([connection_id], event) == 1

    # =========================================================================
    # Internal
    # =========================================================================

    async def _deliver(self, connection_ids: Iterable[str], event: dict) -> int:
        pairs = [
            (cid, self._connections[cid])
            for cid in connection_ids
            if cid in self._connections
        ]
        if not pairs:
            return 0

        results = await asyncio.gather(
            *[self._safe_send(ws, event) for _, ws in pairs],
            return_exceptions=True
        )

        failed = [cid for (cid, _), ok in zip(pairs, results) if ok is not True]
        if failed:
            await self._cleanup_connections(failed)
        return len(pairs) - len(failed)

    async def _safe_send(self, connection: WebSocket, event: dict) -> bool:
        try:
            await connection.send_json(event)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection: {e}")
            return False

    async def _cleanup_connections(self, failed: List[str]) -> None:
        async with self._lock:
            for cid in failed:
                self._drop(cid)
                logger.debug(f"Removed dead connection {cid}")

    def _drop(self, connection_id: str) -> None:
        self._connections.pop(connection_id, None)
        for key in self._memberships.pop(connection_id, set()):
            members = self._groups.get(key)
            if members is None:
                continue
            members.discard(connection_id)
            if not members:
                del self._groups[key]
