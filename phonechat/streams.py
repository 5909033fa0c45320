"""
Message collections with live query subscriptions.

A collection answers three calls for the chat client:
- listen: live, newest-first view of one conversation, capped to a limit,
  re-delivered on every change until the returned Subscription is cancelled
- fetch_page: one-shot page strictly older than a cursor
- add: write a message with a server-assigned timestamp

SqlMessageCollection keeps messages in the local SQLAlchemy database and
notifies in-process listeners on write. The Firestore-backed collection
lives in firestore_stream.py.
"""

import itertools
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from phonechat.config import settings
from phonechat.schemas import Message
from phonechat.storage import (
    SessionLocal,
    init_db,
    create_message,
    get_messages_page,
    decode_timestamp,
)
from phonechat.utils import utc_now

logger = logging.getLogger(__name__)


@dataclass
class Snapshot:
    """Query result: messages newest first, cursor of the oldest one."""
    messages: list[Message] = field(default_factory=list)
    cursor: Any = None

    @property
    def empty(self) -> bool:
        return not self.messages


SnapshotCallback = Callable[[Snapshot], None]
ErrorCallback = Callable[[Exception], None]


class Subscription:
    """Cancel handle for a live query."""

    def __init__(self, on_cancel: Optional[Callable[[], None]] = None):
        self.on_cancel = on_cancel
        self.active = True

    def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        if self.on_cancel is not None:
            self.on_cancel()


class MessageCollection:
    """Interface shared by the SQL and Firestore message collections."""

    def listen(
        self,
        conversation_id: str,
        limit: int,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> Subscription:
        raise NotImplementedError

    async def fetch_page(self, conversation_id: str, limit: int, before: Any = None) -> Snapshot:
        raise NotImplementedError

    async def add(self, text: str, conversation_id: str) -> str:
        raise NotImplementedError


@dataclass
class _Listener:
    conversation_id: str
    limit: int
    on_snapshot: SnapshotCallback
    on_error: ErrorCallback
    subscription: Subscription = None


class SqlMessageCollection(MessageCollection):
    """
    MessageCollection over the local database.

    Snapshots are delivered synchronously: once when listen() is called and
    again after every add() to the same conversation.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        init_db()
        self.clock = clock
        self._listeners: dict[int, _Listener] = {}
        self._ids = itertools.count()

    def active_listeners(self, conversation_id: Optional[str] = None) -> int:
        return sum(
            1 for listener in self._listeners.values()
            if conversation_id is None or listener.conversation_id == conversation_id
        )

    def listen(self, conversation_id, limit, on_snapshot, on_error) -> Subscription:
        key = next(self._ids)
        listener = _Listener(conversation_id, limit, on_snapshot, on_error)
        listener.subscription = Subscription(on_cancel=lambda: self._listeners.pop(key, None))
        self._listeners[key] = listener
        logger.debug(f"Listener {key} attached to conversation {conversation_id}")
        self._deliver(listener)
        return listener.subscription

    async def fetch_page(self, conversation_id, limit, before=None) -> Snapshot:
        return self._query(conversation_id, limit, before)

    async def add(self, text: str, conversation_id: str) -> str:
        message_id = uuid.uuid4().hex
        with SessionLocal() as db:
            create_message(
                db=db,
                message_id=message_id,
                text=text,
                conversation_id=conversation_id,
                created_at=self.clock(),
            )

        for listener in list(self._listeners.values()):
            if listener.conversation_id == conversation_id:
                self._deliver(listener)
        return message_id

    def _query(self, conversation_id: str, limit: int, before=None) -> Snapshot:
        with SessionLocal() as db:
            rows = get_messages_page(db, conversation_id, limit, before)
            messages = [
                Message(
                    id=row.id,
                    text=row.text,
                    conversation_id=row.conversation_id,
                    created_at=decode_timestamp(row.created_at),
                )
                for row in rows
            ]
            cursor = (rows[-1].created_at, rows[-1].seq) if rows else None
        return Snapshot(messages=messages, cursor=cursor)

    def _deliver(self, listener: _Listener) -> None:
        if not listener.subscription.active:
            return
        try:
            snapshot = self._query(listener.conversation_id, listener.limit)
        except Exception as e:
            logger.error(f"Snapshot query failed for {listener.conversation_id}: {e}")
            listener.on_error(e)
            return
        listener.on_snapshot(snapshot)


def open_collection(backend: Optional[str] = None) -> MessageCollection:
    """Build the message collection named by MESSAGE_BACKEND."""
    backend = (backend or settings.MESSAGE_BACKEND).lower()
    if backend == "sql":
        return SqlMessageCollection()
    if backend == "firestore":
        from phonechat.firestore_stream import FirestoreMessageCollection
        return FirestoreMessageCollection()
    raise ValueError(f"Unknown message backend: {backend}")
