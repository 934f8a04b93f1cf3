"""Async gateway from the chat core to the Record Store.

The store is synchronous (embedded DuckDB). Each call runs in a worker
thread and is bounded by ``store.timeout_seconds``:

    - a timeout fails the call immediately (no retry); the call runs in a
      store transaction that is rolled back instead of committed, so a
      failed write never shows up later
    - a lost optimistic version check (StaleRecordError) is passed through
      so the caller can re-read and re-apply
    - any other store error is retried once when ``retry_once`` is set,
      then surfaced as PersistenceError
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, List, Optional

from chatsync.store import CallTicket, Message, RecordStore, StaleRecordError, User

from .errors import PersistenceError

logger = logging.getLogger(__name__)


def _discard_outcome(task: "asyncio.Future[Any]") -> None:
    # abandoned calls end in CallAbandoned; nobody awaits them
    if not task.cancelled():
        task.exception()


class StoreGateway:
    """Timeout- and retry-aware async facade over RecordStore."""

    def __init__(
        self,
        store: RecordStore,
        timeout_seconds: float = 5.0,
        retry_once: bool = True,
    ) -> None:
        self.store = store
        self.timeout_seconds = timeout_seconds
        self.retry_once = retry_once

    async def _call(self, operation: str, fn: Callable[..., Any], *args: Any) -> Any:
        attempts = 2 if self.retry_once else 1
        for attempt in range(1, attempts + 1):
            ticket = CallTicket()
            task = asyncio.ensure_future(
                asyncio.to_thread(self.store.run_atomic, ticket, fn, *args)
            )
            try:
                return await asyncio.wait_for(asyncio.shield(task), timeout=self.timeout_seconds)
            except asyncio.TimeoutError as exc:
                if not ticket.abandon():
                    # already committing, the write lands: report the real outcome
                    return await self._finish_committing(operation, task)
                task.add_done_callback(_discard_outcome)
                logger.warning("[Store] %s timed out after %.2fs", operation, self.timeout_seconds)
                raise PersistenceError(operation, exc) from exc
            except StaleRecordError:
                raise
            except Exception as exc:
                if attempt < attempts:
                    logger.warning("[Store] %s failed (%r), retrying once", operation, exc)
                    continue
                raise PersistenceError(operation, exc) from exc

    @staticmethod
    async def _finish_committing(operation: str, task: "asyncio.Future[Any]") -> Any:
        try:
            return await task
        except Exception as exc:
            raise PersistenceError(operation, exc) from exc

    async def upsert_user_last_seen(
        self, identity: str, last_seen: Optional[datetime]
    ) -> None:
        await self._call("upsert_user_last_seen", self.store.upsert_user_last_seen, identity, last_seen)

    async def insert_message(self, message: Message) -> str:
        return await self._call("insert_message", self.store.insert_message, message)

    async def find_message_by_id(self, message_id: str) -> Optional[Message]:
        return await self._call("find_message_by_id", self.store.find_message_by_id, message_id)

    async def save_message(self, message: Message) -> Message:
        return await self._call("save_message", self.store.save_message, message)

    async def find_messages_between(self, user1: str, user2: str) -> List[Message]:
        return await self._call("find_messages_between", self.store.find_messages_between, user1, user2)

    async def bulk_set_read(self, reader: str, sender: str) -> int:
        return await self._call("bulk_set_read", self.store.bulk_set_read, reader, sender)

    async def bulk_delete_between(self, user1: str, user2: str) -> int:
        return await self._call("bulk_delete_between", self.store.bulk_delete_between, user1, user2)

    async def find_user(self, username: str) -> Optional[User]:
        return await self._call("find_user", self.store.find_user, username)

    async def create_user(self, username: str) -> Optional[User]:
        return await self._call("create_user", self.store.create_user, username)
