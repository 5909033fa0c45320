"""
Cloud Firestore message collection.

Documents live in the "messages" collection with the shape
{text, conversationId, createdAt}; createdAt is a server timestamp.

The SDK delivers snapshot callbacks on its own thread; they are handed to
the event loop that called listen() so the chat controller only ever runs on
that loop.
"""

import asyncio
import logging
from typing import Any, Optional

from firebase_admin import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from phonechat.identity import get_firebase_app
from phonechat.schemas import Message
from phonechat.streams import MessageCollection, Snapshot, Subscription

logger = logging.getLogger(__name__)

COLLECTION_NAME = "messages"


def document_to_message(doc) -> Message:
    data = doc.to_dict() or {}
    return Message(
        id=doc.id,
        text=data.get("text", ""),
        conversation_id=data.get("conversationId", ""),
        created_at=data.get("createdAt"),
    )


def documents_to_snapshot(docs: list) -> Snapshot:
    """The cursor is the oldest document itself, as start_after expects."""
    return Snapshot(
        messages=[document_to_message(doc) for doc in docs],
        cursor=docs[-1] if docs else None,
    )


class FirestoreMessageCollection(MessageCollection):
    """
    MessageCollection over Cloud Firestore.

    Snapshot callbacks are delivered on `loop`, or on the loop running when
    listen() is called; listen() outside a running loop needs an explicit one.
    """

    def __init__(
        self,
        client: Optional[Any] = None,
        collection_name: str = COLLECTION_NAME,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self.client = client or firestore.client(get_firebase_app())
        self.collection_name = collection_name
        self.loop = loop

    def _query(self, conversation_id: str, limit: int, before: Any = None):
        query = (
            self.client.collection(self.collection_name)
            .where(filter=FieldFilter("conversationId", "==", conversation_id))
            .order_by("createdAt", direction=firestore.Query.DESCENDING)
        )
        if before is not None:
            query = query.start_after(before)
        return query.limit(limit)

    def listen(self, conversation_id, limit, on_snapshot, on_error) -> Subscription:
        loop = self.loop or asyncio.get_running_loop()
        subscription = Subscription()

        def deliver(snapshot: Snapshot) -> None:
            if subscription.active:
                on_snapshot(snapshot)

        def fail(error: Exception) -> None:
            if subscription.active:
                on_error(error)

        def on_change(docs, changes, read_time) -> None:
            try:
                snapshot = documents_to_snapshot(list(docs))
            except Exception as e:
                logger.error(f"Snapshot conversion failed: {e}")
                loop.call_soon_threadsafe(fail, e)
                return
            loop.call_soon_threadsafe(deliver, snapshot)

        watch = self._query(conversation_id, limit).on_snapshot(on_change)
        subscription.on_cancel = watch.unsubscribe
        logger.debug(f"Firestore listener attached to conversation {conversation_id}")
        return subscription

    async def fetch_page(self, conversation_id, limit, before=None) -> Snapshot:
        query = self._query(conversation_id, limit, before)
        docs = await asyncio.to_thread(query.get)
        return documents_to_snapshot(list(docs))

    async def add(self, text: str, conversation_id: str) -> str:
        collection = self.client.collection(self.collection_name)
        _, doc_ref = await asyncio.to_thread(
            collection.add,
            {
                "text": text,
                "conversationId": conversation_id,
                "createdAt": firestore.SERVER_TIMESTAMP,
            },
        )
        return doc_ref.id
