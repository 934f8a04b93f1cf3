"""Chat manager: wires the real-time chat core together.

This module owns the single set of shared components used by every
WebSocket handler:

    - PresenceRegistry: who is online, identity -> connections
    - ConversationRouter: live connections and conversation groups
    - MessageMutationEngine: authorized message mutations + fan-out
    - Session objects, one per open connection

Presence snapshots are delivered through the router's global broadcast,
and lastSeen write-throughs go through the same StoreGateway the engine
uses, so both share the configured timeout and retry policy.

Thread Safety:
    This implementation is designed for async/await usage with a single event loop.
    It is NOT thread-safe for concurrent access from multiple threads.
"""
import logging
import uuid
from typing import Dict, Optional, Set

from fastapi import WebSocket

from chatsync.store import RecordStore

from .engine import MessageMutationEngine
from .persistence import StoreGateway
from .presence import PresenceRegistry
from .rooms import ConversationRouter
from .session import Session

logger = logging.getLogger(__name__)


class ChatManager:
    """Owns the presence, routing and mutation components.

    ``configure()`` must be called before use (the app lifespan does this);
    calling it again discards all connection state and starts fresh.
    """

    def __init__(self) -> None:
        self.gateway: Optional[StoreGateway] = None
        self.presence: Optional[PresenceRegistry] = None
        self.rooms: Optional[ConversationRouter] = None
        self.engine: Optional[MessageMutationEngine] = None
        # connection id -> Session
        self.sessions: Dict[str, Session] = {}

    def configure(
        self,
        store: RecordStore,
        timeout_seconds: float = 5.0,
        retry_once: bool = True,
    ) -> None:
        """Build a fresh set of components on top of ``store``."""
        self.gateway = StoreGateway(store, timeout_seconds=timeout_seconds, retry_once=retry_once)
        self.presence = PresenceRegistry(
            broadcaster=self._broadcast_presence,
            last_seen_writer=self.gateway.upsert_user_last_seen,
        )
        self.rooms = ConversationRouter(self.presence)
        self.engine = MessageMutationEngine(self.gateway, self.rooms)
        self.sessions = {}
        logger.info("[Manager] Configured (timeout=%.1fs, retry_once=%s)", timeout_seconds, retry_once)

    @property
    def is_configured(self) -> bool:
        return self.engine is not None

    async def _broadcast_presence(self, event: dict) -> None:
        await self.rooms.broadcast_global(event)

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def connect(self, websocket: WebSocket) -> Session:
        """Accept a WebSocket and give it an unauthenticated session."""
        await websocket.accept()
        connection_id = str(uuid.uuid4())
        await self.rooms.register(connection_id, websocket)
        session = Session(connection_id, self.presence)
        self.sessions[connection_id] = session
        logger.info(
            "[Manager] Connection %s accepted (%d live)",
            connection_id, self.rooms.connection_count(),
        )
        return session

    async def disconnect(self, session: Session) -> Optional[str]:
        """Tear down a connection; returns the identity it was logged in as."""
        identity = await session.close()
        await self.rooms.unregister(session.connection_id)
        self.sessions.pop(session.connection_id, None)
        logger.info("[Manager] Connection %s closed (identity=%s)", session.connection_id, identity)
        return identity

    async def logout(self, session: Session, identity: str) -> Set[str]:
        """Log an identity out of every connection it holds."""
        removed = await session.logout(identity)
        for connection_id in removed:
            other = self.sessions.get(connection_id)
            if other is not None and other is not session:
                other.demote()
        return removed


# Global singleton instance used by all WebSocket handlers
manager = ChatManager()
