"""
Chat client controller.

The view state is an explicit ChatViewState object; the controller pieces
(StreamSubscriber, PaginationLoader) mutate it and re-render through
MessageListView. Everything runs on one asyncio event loop.
"""

import html
import logging
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from typing import Optional

from phonechat.config import settings
from phonechat.schemas import Message
from phonechat.status import Status, StatusKind
from phonechat.streams import MessageCollection, Snapshot, Subscription

logger = logging.getLogger(__name__)

PENDING_TIME_LABEL = "Just now"
LOAD_MORE_LABEL = "Load Older Messages"
LOADING_LABEL = "Loading..."

# Layout metrics used for scroll anchoring
ROW_HEIGHT = 48
LINE_HEIGHT = 20
LOAD_MORE_HEIGHT = 40

MESSAGE_TEMPLATE = (
    '<div class="message">'
    '<div class="message-content">'
    '<div class="message-text">{text}</div>'
    '<div class="message-time">{time}</div>'
    '</div>'
    '</div>'
)


# =============================================================================
# Rendering
# =============================================================================

def format_time(created_at: Optional[datetime], tz: Optional[tzinfo] = None) -> str:
    """Local wall-clock time of a server timestamp, or the pending label."""
    if created_at is None:
        return PENDING_TIME_LABEL
    return created_at.astimezone(tz).strftime("%H:%M:%S")


def render_message(message: Message, tz: Optional[tzinfo] = None) -> str:
    return MESSAGE_TEMPLATE.format(
        text=html.escape(message.text, quote=True),
        time=html.escape(format_time(message.created_at, tz)),
    )


def render_messages(messages: list[Message], tz: Optional[tzinfo] = None) -> list[str]:
    return [render_message(message, tz) for message in messages]


def message_height(message: Message) -> int:
    extra_lines = message.text.count("\n")
    return ROW_HEIGHT + extra_lines * LINE_HEIGHT


class MessageListView:
    """
    Rendered message list with its scroll state.

    scroll_top is measured from the top of the content; the load-more
    affordance sits above the first message.
    """

    def __init__(self, tz: Optional[tzinfo] = None):
        self.tz = tz
        self.items: list[str] = []
        self.scroll_top = 0
        self.load_more_visible = True
        self.load_more_enabled = True
        self.load_more_label = LOAD_MORE_LABEL
        self._heights: list[int] = []
        self._rendered = False

    @property
    def content_height(self) -> int:
        return LOAD_MORE_HEIGHT + sum(self._heights)

    def show(self, messages: list[Message]) -> None:
        first_render = not self._rendered
        self.items = render_messages(messages, self.tz)
        self._heights = [message_height(message) for message in messages]
        self._rendered = True
        if first_render:
            self.scroll_to_bottom()

    def scroll_to_bottom(self) -> None:
        self.scroll_top = self.content_height

    def reset(self) -> None:
        self.items = []
        self._heights = []
        self._rendered = False
        self.scroll_top = 0
        self.load_more_visible = True
        self.load_more_enabled = True
        self.load_more_label = LOAD_MORE_LABEL


# =============================================================================
# State
# =============================================================================

class MessageStore:
    """Locally held window of one conversation, oldest first."""

    def __init__(self):
        self.messages: list[Message] = []
        self.cursor = None

    def replace(self, snapshot: Snapshot) -> None:
        self.messages = list(reversed(snapshot.messages))
        if not snapshot.empty:
            self.cursor = snapshot.cursor

    def prepend(self, snapshot: Snapshot) -> None:
        self.messages = list(reversed(snapshot.messages)) + self.messages
        self.cursor = snapshot.cursor

    def clear(self) -> None:
        self.messages = []
        self.cursor = None


@dataclass
class ChatViewState:
    conversation_id: str
    store: MessageStore = field(default_factory=MessageStore)
    view: MessageListView = field(default_factory=MessageListView)
    subscription: Optional[Subscription] = None
    # Bumped on every teardown; callbacks and fetches from an older
    # generation are discarded
    generation: int = 0
    loading_older: bool = False
    history_exhausted: bool = False
    status: Optional[Status] = None

    def reset_window(self) -> None:
        self.store.clear()
        self.view.reset()
        self.loading_older = False
        self.history_exhausted = False


# =============================================================================
# Controllers
# =============================================================================

class StreamSubscriber:
    """Owns the single live subscription of a ChatViewState."""

    def __init__(self, collection: MessageCollection, state: ChatViewState, page_size: int):
        self.collection = collection
        self.state = state
        self.page_size = page_size

    def subscribe(self, conversation_id: str) -> None:
        state = self.state
        self.unsubscribe()

        state.conversation_id = conversation_id
        state.reset_window()
        generation = state.generation

        def on_snapshot(snapshot: Snapshot) -> None:
            if generation == state.generation:
                self._apply(snapshot)

        def on_error(error: Exception) -> None:
            if generation == state.generation:
                self._fail(error)

        logger.info(f"Subscribing to conversation {conversation_id}")
        try:
            state.subscription = self.collection.listen(
                conversation_id, self.page_size, on_snapshot, on_error
            )
        except Exception as e:
            self._fail(e)

    def switch_conversation(self, conversation_id: str) -> None:
        self.subscribe(conversation_id)

    def unsubscribe(self) -> None:
        state = self.state
        if state.subscription is not None:
            logger.debug(f"Cancelling subscription to {state.conversation_id}")
            state.subscription.cancel()
            state.subscription = None
        state.generation += 1

    def _apply(self, snapshot: Snapshot) -> None:
        state = self.state
        state.store.replace(snapshot)
        state.view.show(state.store.messages)
        state.view.load_more_visible = not state.history_exhausted

    def _fail(self, error: Exception) -> None:
        logger.error(f"Snapshot error: {error}")
        self.state.status = Status(f"Error loading messages: {error}", StatusKind.ERROR)


class PaginationLoader:
    """Backward paging with a single-flight guard."""

    def __init__(self, collection: MessageCollection, state: ChatViewState, page_size: int):
        self.collection = collection
        self.state = state
        self.page_size = page_size

    async def load_older(self) -> int:
        """
        Prepend the next older page.

        Returns the number of messages added; 0 when the call was ignored,
        history is exhausted, or the fetch failed.
        """
        state = self.state
        view = state.view
        if state.store.cursor is None or state.loading_older or state.history_exhausted:
            return 0

        state.loading_older = True
        view.load_more_enabled = False
        view.load_more_label = LOADING_LABEL
        generation = state.generation

        try:
            snapshot = await self.collection.fetch_page(
                state.conversation_id, self.page_size, state.store.cursor
            )
            if generation != state.generation:
                logger.debug("Discarding page fetched for a previous conversation")
                return 0

            if snapshot.empty:
                state.history_exhausted = True
                state.status = Status("No more messages", StatusKind.INFO)
                view.load_more_visible = False
                return 0

            height_before = view.content_height
            scroll_before = view.scroll_top
            state.store.prepend(snapshot)
            view.show(state.store.messages)
            view.scroll_top = scroll_before + (view.content_height - height_before)
            logger.info(f"Loaded {len(snapshot.messages)} older messages")
            return len(snapshot.messages)
        except Exception as e:
            if generation == state.generation:
                logger.error(f"Load more error: {e}")
                state.status = Status(f"Error loading more: {e}", StatusKind.ERROR)
            return 0
        finally:
            if generation == state.generation:
                state.loading_older = False
                view.load_more_enabled = True
                view.load_more_label = LOAD_MORE_LABEL


class ChatController:
    """Wires the chat pipeline for one page/view."""

    def __init__(
        self,
        collection: MessageCollection,
        conversation_id: str = settings.DEFAULT_CONVERSATION_ID,
        initial_page_size: int = settings.CHAT_INITIAL_PAGE_SIZE,
        history_page_size: int = settings.CHAT_HISTORY_PAGE_SIZE,
        tz: Optional[tzinfo] = None,
    ):
        self.collection = collection
        self.state = ChatViewState(conversation_id=conversation_id, view=MessageListView(tz))
        self.subscriber = StreamSubscriber(collection, self.state, initial_page_size)
        self.loader = PaginationLoader(collection, self.state, history_page_size)

    def start(self) -> None:
        """
        Subscribe to the current conversation.

        Call from the event loop that should receive snapshots: the Firestore
        collection binds its deliveries to the running loop unless it was
        given one explicitly.
        """
        self.state.status = Status("Connected", StatusKind.CONNECTED)
        self.subscriber.subscribe(self.state.conversation_id)

    def stop(self) -> None:
        self.subscriber.unsubscribe()

    def switch_conversation(self, conversation_id: str) -> None:
        self.subscriber.switch_conversation(conversation_id)

    async def load_older(self) -> int:
        return await self.loader.load_older()

    async def send_message(self, text: str) -> bool:
        """
        Write a message to the current conversation.

        Nothing is echoed locally; the subscription delivers the stored record.
        """
        text = text.strip()
        if not text:
            return False

        try:
            await self.collection.add(text, self.state.conversation_id)
        except Exception as e:
            logger.error(f"Send message error: {e}")
            self.state.status = Status(f"Error sending message: {e}", StatusKind.ERROR)
            return False
        return True
