"""DuckDB-based Record Store for users and messages.

This module provides the persistence collaborator consumed by the chat core.
The service implements the singleton pattern to ensure only one database
connection exists at a time.

Database Schema:
    users table:
        - username: Primary key
        - created_at: When the user was first written (UTC)
        - last_seen: When the user last went offline (NULL while online)

    messages table:
        - id: Store-assigned UUID primary key
        - seq: Insertion order, breaks timestamp ties
        - sender / receiver: Identities (immutable after insert)
        - body, sent_at, is_read, tag
        - reactions: JSON array of {identity, emoji}
        - edited, edited_at, deleted, deleted_by
        - version: Bumped on every write, used for optimistic concurrency

Thread Safety:
    DuckDB connections are not safe for concurrent use. Every public method
    holds an internal lock, so the store can be called from worker threads
    (the chat core runs each call through asyncio.to_thread).

    run_atomic() wraps a call in a transaction guarded by a CallTicket, so a
    caller that times out can make sure the write never lands.

Usage:
    store = RecordStore.get_instance()
    message_id = store.insert_message(Message(sender="a", receiver="b", body="hi"))
    message = store.find_message_by_id(message_id)
"""
import json
import logging
import threading
import uuid
from datetime import datetime
from typing import Any, Callable, List, Optional

import duckdb

from .schemas import Message, Reaction, User, utcnow

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when the Record Store cannot complete an operation."""


class StaleRecordError(StoreError):
    """Raised when a save lost an optimistic version check."""

    def __init__(self, message_id: str, expected_version: int) -> None:
        super().__init__(
            f"Message {message_id} changed since version {expected_version}"
        )
        self.message_id = message_id
        self.expected_version = expected_version


class CallAbandoned(StoreError):
    """Raised inside a store call whose caller stopped waiting for it."""


class CallTicket:
    """Hand-off between a store call running in a worker thread and its caller.

    The caller may abandon the call (it timed out). The worker claims the
    ticket right before committing; whichever happens first wins, so an
    abandoned call never commits and a committing call is never abandoned.
    """

    PENDING = "pending"
    COMMITTING = "committing"
    ABANDONED = "abandoned"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.state = self.PENDING

    @property
    def abandoned(self) -> bool:
        return self.state == self.ABANDONED

    def abandon(self) -> bool:
        """Give up on the call. Returns False if it is already committing."""
        with self._lock:
            if self.state == self.COMMITTING:
                return False
            self.state = self.ABANDONED
            return True

    def claim_commit(self) -> bool:
        """Claim the right to commit. Returns False if the call was abandoned."""
        with self._lock:
            if self.state == self.ABANDONED:
                return False
            self.state = self.COMMITTING
            return True


_MESSAGE_COLUMNS = (
    "id, sender, receiver, body, sent_at, is_read, tag, reactions, "
    "edited, edited_at, deleted, deleted_by, version"
)


class RecordStore:
    """Singleton service storing User and Message records in DuckDB.

    Attributes:
        _instance: Singleton instance of the service.
        _db_path: Path to the DuckDB database file.
    """

    _instance: Optional["RecordStore"] = None
    _db_path: str = "chatsync.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Initialize the store, creating the schema if needed.

        Args:
            db_path: Path to DuckDB file, or ":memory:". Defaults to "chatsync.duckdb".
        """
        if db_path:
            self._db_path = db_path
        # re-entrant: run_atomic holds it around the public methods it wraps
        self._lock = threading.RLock()
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()
        logger.info("[RecordStore] Initialized with db=%s", self._db_path)

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "RecordStore":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close and forget the singleton. Primarily used by tests."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        conn = self._get_connection()
        conn.execute("CREATE SEQUENCE IF NOT EXISTS messages_seq START 1")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                username VARCHAR PRIMARY KEY,
                created_at TIMESTAMP NOT NULL,
                last_seen TIMESTAMP
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id VARCHAR PRIMARY KEY,
                seq BIGINT DEFAULT nextval('messages_seq'),
                sender VARCHAR NOT NULL,
                receiver VARCHAR NOT NULL,
                body VARCHAR NOT NULL,
                sent_at DOUBLE NOT NULL,
                is_read BOOLEAN NOT NULL DEFAULT false,
                tag VARCHAR,
                reactions VARCHAR NOT NULL DEFAULT '[]',
                edited BOOLEAN NOT NULL DEFAULT false,
                edited_at DOUBLE,
                deleted BOOLEAN NOT NULL DEFAULT false,
                deleted_by VARCHAR,
                version INTEGER NOT NULL DEFAULT 0
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_messages_pair ON messages(sender, receiver)"
        )

    # -----------------------------------------------------------------------
    # Users
    # -----------------------------------------------------------------------

    def find_user(self, username: str) -> Optional[User]:
        with self._lock:
            row = self._get_connection().execute(
                "SELECT username, created_at, last_seen FROM users WHERE username = ?",
                [username],
            ).fetchone()
        if row is None:
            return None
        return User(username=row[0], createdAt=row[1], lastSeen=row[2])

    def create_user(self, username: str) -> Optional[User]:
        """Insert a new user. Returns None if the username is taken."""
        now = utcnow()
        with self._lock:
            conn = self._get_connection()
            exists = conn.execute(
                "SELECT 1 FROM users WHERE username = ?", [username]
            ).fetchone()
            if exists:
                return None
            conn.execute(
                "INSERT INTO users (username, created_at, last_seen) VALUES (?, ?, NULL)",
                [username, now],
            )
        return User(username=username, createdAt=now)

    def upsert_user_last_seen(
        self, username: str, last_seen: Optional[datetime]
    ) -> None:
        """Set lastSeen for a user, creating the user record if absent.

        Args:
            username: The identity to update.
            last_seen: Timestamp of going offline, or None for "online now".
        """
        with self._lock:
            self._get_connection().execute(
                """
                INSERT INTO users (username, created_at, last_seen)
                VALUES (?, ?, ?)
                ON CONFLICT (username) DO UPDATE SET last_seen = excluded.last_seen
                """,
                [username, utcnow(), last_seen],
            )

    # -----------------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------------

    def insert_message(self, message: Message) -> str:
        """Insert a new message and return its store-assigned id."""
        message_id = str(uuid.uuid4())
        with self._lock:
            self._get_connection().execute(
                """
                INSERT INTO messages
                  (id, sender, receiver, body, sent_at, is_read, tag, reactions,
                   edited, edited_at, deleted, deleted_by, version)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0)
                """,
                [
                    message_id, message.sender, message.receiver, message.body,
                    message.timestamp, message.read, message.tag,
                    self._dump_reactions(message.reactions),
                    message.edited, message.editedAt, message.deleted,
                    message.deletedBy,
                ],
            )
        return message_id

    def find_message_by_id(self, message_id) -> Optional[Message]:
        """Look up a message. Malformed or unknown ids resolve to None."""
        if not isinstance(message_id, str) or not message_id:
            return None
        with self._lock:
            row = self._get_connection().execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?",
                [message_id],
            ).fetchone()
        return self._row_to_message(row) if row else None

    def save_message(self, message: Message) -> Message:
        """Write back a mutated message.

        The write only lands if the stored version still equals
        ``message.version``; the returned copy carries the new version.

        Raises:
            StaleRecordError: The record changed (or vanished) since it was read.
        """
        with self._lock:
            row = self._get_connection().execute(
                """
                UPDATE messages
                SET body = ?, is_read = ?, tag = ?, reactions = ?,
                    edited = ?, edited_at = ?, deleted = ?, deleted_by = ?,
                    version = version + 1
                WHERE id = ? AND version = ?
                RETURNING version
                """,
                [
                    message.body, message.read, message.tag,
                    self._dump_reactions(message.reactions),
                    message.edited, message.editedAt, message.deleted,
                    message.deletedBy, message.id, message.version,
                ],
            ).fetchone()
        if row is None:
            raise StaleRecordError(message.id, message.version)
        return message.model_copy(update={"version": row[0]})

    def find_messages_between(self, user1: str, user2: str) -> List[Message]:
        """All messages exchanged by the pair, oldest first."""
        with self._lock:
            rows = self._get_connection().execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM messages
                WHERE (sender = ? AND receiver = ?) OR (sender = ? AND receiver = ?)
                ORDER BY sent_at ASC, seq ASC
                """,
                [user1, user2, user2, user1],
            ).fetchall()
        return [self._row_to_message(r) for r in rows]

    def bulk_set_read(self, reader: str, sender: str) -> int:
        """Mark every unread message from sender to reader as read.

        Returns:
            Number of messages flipped to read.
        """
        with self._lock:
            rows = self._get_connection().execute(
                """
                UPDATE messages SET is_read = true, version = version + 1
                WHERE sender = ? AND receiver = ? AND is_read = false
                RETURNING id
                """,
                [sender, reader],
            ).fetchall()
        return len(rows)

    def bulk_delete_between(self, user1: str, user2: str) -> int:
        """Remove every message between the pair. Returns the number removed."""
        with self._lock:
            rows = self._get_connection().execute(
                """
                DELETE FROM messages
                WHERE (sender = ? AND receiver = ?) OR (sender = ? AND receiver = ?)
                RETURNING id
                """,
                [user1, user2, user2, user1],
            ).fetchall()
        return len(rows)

    def run_atomic(self, ticket: CallTicket, fn: Callable[..., Any], *args: Any) -> Any:
        """Run ``fn(*args)`` in one transaction that commits only if ``ticket`` allows.

        Raises:
            CallAbandoned: The caller abandoned the ticket; nothing was written.
        """
        with self._lock:
            if ticket.abandoned:
                raise CallAbandoned("abandoned before start")
            conn = self._get_connection()
            conn.execute("BEGIN TRANSACTION")
            try:
                result = fn(*args)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            if not ticket.claim_commit():
                conn.execute("ROLLBACK")
                logger.warning("[RecordStore] Rolled back call abandoned by its caller")
                raise CallAbandoned("abandoned before commit")
            conn.execute("COMMIT")
            return result

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    @staticmethod
    def _dump_reactions(reactions: List[Reaction]) -> str:
        return json.dumps([r.model_dump() for r in reactions])

    @staticmethod
    def _row_to_message(row) -> Message:
        return Message(
            id=row[0],
            sender=row[1],
            receiver=row[2],
            body=row[3],
            timestamp=row[4],
            read=row[5],
            tag=row[6],
            reactions=[Reaction(**r) for r in json.loads(row[7] or "[]")],
            edited=row[8],
            editedAt=row[9],
            deleted=row[10],
            deletedBy=row[11],
            version=row[12],
        )
