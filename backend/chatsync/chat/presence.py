"""Presence Registry: which identities currently have live connections.

The registry maps each identity to the set of connection ids logged in as
that identity. An identity is online iff that set is non-empty, so a second
device keeps a user online when the first one drops.

Every change to the mapping broadcasts an ``onlineUsers`` snapshot to all
connections. The snapshot is taken and sent while the registry lock is
held, so concurrent logins and disconnects can never deliver snapshots out
of order.

lastSeen persistence is fire-and-forget: the write runs as a background
task and a failure is reported to the failure channel without delaying the
broadcast.
"""
import asyncio
import logging
from datetime import datetime
from functools import partial
from typing import Awaitable, Callable, Dict, Optional, Set

from chatsync.store.schemas import utcnow

from .errors import failures

logger = logging.getLogger(__name__)

Broadcaster = Callable[[dict], Awaitable[None]]
LastSeenWriter = Callable[[str, Optional[datetime]], Awaitable[None]]


class PresenceRegistry:
    """Lock-guarded identity -> connections mapping.

    Args:
        broadcaster: Coroutine delivering an event to every live connection.
        last_seen_writer: Coroutine persisting lastSeen for an identity
            (None value means "online now").
    """

    def __init__(
        self,
        broadcaster: Optional[Broadcaster] = None,
        last_seen_writer: Optional[LastSeenWriter] = None,
    ) -> None:
        self._lock = asyncio.Lock()
        # identity -> set of connection ids
        self._connections: Dict[str, Set[str]] = {}
        # connection id -> identity
        self._identities: Dict[str, str] = {}
        self._broadcaster = broadcaster
        self._last_seen_writer = last_seen_writer
        self._pending: Set[asyncio.Task] = set()
        # identity -> most recent lastSeen write
        self._last_write: Dict[str, asyncio.Task] = {}

    # =========================================================================
    # Mutations
    # =========================================================================

    async def associate(self, identity: str, connection_id: str) -> None:
        """Record that ``connection_id`` now represents ``identity``."""
        async with self._lock:
            previous = self._identities.get(connection_id)
            if previous == identity:
                return
            went_offline = None
            if previous is not None:
                went_offline = previous if self._remove(connection_id) else None

            self._connections.setdefault(identity, set()).add(connection_id)
            self._identities[connection_id] = identity
            logger.info(
                "[Presence] %s online via %s (%d connection(s))",
                identity, connection_id, len(self._connections[identity]),
            )

            self._persist_last_seen(identity, None)
            if went_offline:
                self._persist_last_seen(went_offline, utcnow())
            await self._broadcast_snapshot()

    async def disassociate(self, connection_id: str) -> Optional[str]:
        """Drop a connection from whichever identity it represented.

        Returns:
            The affected identity, or None if the connection was unmapped.
        """
        async with self._lock:
            identity = self._identities.get(connection_id)
            if identity is None:
                return None
            if self._remove(connection_id):
                logger.info("[Presence] %s offline (last connection %s)", identity, connection_id)
                self._persist_last_seen(identity, utcnow())
            await self._broadcast_snapshot()
            return identity

    async def explicit_logout(self, identity: str) -> Set[str]:
        """Remove every connection of ``identity``.

        Returns:
            The connection ids that were removed (empty if already offline).
        """
        async with self._lock:
            removed = self._connections.pop(identity, set())
            for connection_id in removed:
                self._identities.pop(connection_id, None)
            if removed:
                logger.info("[Presence] %s logged out (%d connection(s))", identity, len(removed))
                self._persist_last_seen(identity, utcnow())
                await self._broadcast_snapshot()
            return removed

    # =========================================================================
    # Queries
    # =========================================================================

    def is_online(self, identity: str) -> bool:
        return bool(self._connections.get(identity))

    def online_identities(self) -> Set[str]:
        return {identity for identity, conns in self._connections.items() if conns}

    def connections_of(self, identity: str) -> Set[str]:
        return set(self._connections.get(identity, ()))

    def identity_of(self, connection_id: str) -> Optional[str]:
        return self._identities.get(connection_id)

    def snapshot(self) -> dict:
        return {"type": "onlineUsers", "users": sorted(self.online_identities())}

    async def drain(self) -> None:
        """Wait for outstanding lastSeen writes to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # =========================================================================
    # Internal
    # =========================================================================

    def _remove(self, connection_id: str) -> bool:
        """Unmap a connection. Returns True if its identity went offline."""
        identity = self._identities.pop(connection_id)
        conns = self._connections.get(identity)
        if conns is None:
            return False
        conns.discard(connection_id)
        if not conns:
            del self._connections[identity]
            return True
        return False

    async def _broadcast_snapshot(self) -> None:
        if self._broadcaster is None:
            return
        try:
            await self._broadcaster(self.snapshot())
        except Exception as exc:
            failures.report("presence.broadcast", exc)

    def _persist_last_seen(self, identity: str, last_seen: Optional[datetime]) -> None:
        if self._last_seen_writer is None:
            return
        # writes for one identity land in the order presence changed
        previous = self._last_write.get(identity)
        task = asyncio.create_task(self._write_last_seen(previous, identity, last_seen))
        self._pending.add(task)
        self._last_write[identity] = task
        task.add_done_callback(partial(self._on_persisted, identity))

    async def _write_last_seen(
        self,
        previous: Optional[asyncio.Task],
        identity: str,
        last_seen: Optional[datetime],
    ) -> None:
        if previous is not None:
            await asyncio.wait([previous])
        await self._last_seen_writer(identity, last_seen)

    def _on_persisted(self, identity: str, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if self._last_write.get(identity) is task:
            del self._last_write[identity]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            failures.report("presence.last_seen", exc)
