import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Optional

from marketchat.core.errors import ChatError, FetchFailed, SubscriptionDropped
from marketchat.core.identity import IdentityResolver
from marketchat.utils.env_helper import env_int
from marketchat.utils.event_channel import EventChannel
from .directory import ConversationDirectory
from .realtime import RealtimeBridge, Subscription
from .schemas import Message
from .store import DEFAULT_PAGE_SIZE, MessageStore
from .sync import ConversationTimeline, InsertOutcome, Outbound

logger = logging.getLogger(__name__)

GapHandler = Callable[["ChatSession"], Awaitable[None]]

# Events emitted on ChatSession.events
MESSAGES_CHANGED = "messages_changed"
SEND_FAILED = "send_failed"
FETCH_FAILED = "fetch_failed"
SUBSCRIPTION_DROPPED = "subscription_dropped"


async def reconnect_and_resync(session: "ChatSession") -> None:
    """Gap handler that resubscribes and refetches the newest page."""
    await session.reconnect()


class ChatSession:
    """
    Controller behind one open chat screen.

    Opening resolves the local user and the conversation, loads and seeds the
    newest page, marks it read and subscribes to realtime events. Sends are
    optimistic: `send()` returns as soon as the entry is listed and the
    network call runs as a background task.

    Failures stay inside the session and surface on `events`; only a missing
    local user aborts `open()`.
    """

    def __init__(
        self,
        identity: IdentityResolver,
        directory: ConversationDirectory,
        store: MessageStore,
        bridge: RealtimeBridge,
        events: Optional[EventChannel] = None,
        page_size: Optional[int] = None,
        gap_handler: Optional[GapHandler] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.identity = identity
        self.directory = directory
        self.store = store
        self.bridge = bridge
        self.events = events or EventChannel()
        self.page_size = page_size or env_int("CHAT_PAGE_SIZE", DEFAULT_PAGE_SIZE)
        self.gap_handler = gap_handler
        self._clock = clock

        self.conversation_id: Optional[int] = None
        self.timeline: Optional[ConversationTimeline] = None
        self.closed = False
        self._subscription: Optional[Subscription] = None
        self._tasks: set[asyncio.Task] = set()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    @property
    def messages(self) -> list[Message]:
        return self.timeline.messages if self.timeline is not None else []

    # Opening

    async def open_direct(self, user_id: int) -> ConversationTimeline:
        await self.identity.require_user_id()
        conversation = await self.directory.get_or_create_direct(user_id)
        return await self.open(conversation.id)

    async def open_group(self, community_id: int) -> ConversationTimeline:
        await self.identity.require_user_id()
        conversation = await self.directory.get_or_create_group(community_id)
        return await self.open(conversation.id)

    async def open(self, conversation_id: int) -> ConversationTimeline:
        if self.timeline is not None:
            raise RuntimeError("Chat session is already open.")

        local_user_id = await self.identity.require_user_id()
        self.conversation_id = conversation_id
        if self._clock is not None:
            self.timeline = ConversationTimeline(conversation_id, local_user_id, clock=self._clock)
        else:
            self.timeline = ConversationTimeline(conversation_id, local_user_id)

        await self.resync()
        await self._subscribe()
        logger.info("Opened conversation %s for user %s", conversation_id, local_user_id)
        return self.timeline

    async def resync(self) -> bool:
        """Refetch the newest page and members and reseed. Unconfirmed sends are kept."""
        self._require_open()
        try:
            page = await self.store.list_messages(self.conversation_id, limit=self.page_size)
            members = await self.directory.list_members(self.conversation_id)
        except FetchFailed as e:
            logger.warning("History load for conversation %s failed: %s", self.conversation_id, e)
            self.events.emit(FETCH_FAILED, e)
            return False

        if self.closed:
            return False
        self.timeline.seed(page, members)
        self._changed()
        await self._mark_read()
        return True

    async def load_older(self) -> int:
        """Fetch the page before the oldest listed message. Returns how many messages were added."""
        self._require_open()
        before = self.timeline.oldest_server_created_at()
        try:
            page = await self.store.list_messages(self.conversation_id, limit=self.page_size, before=before)
        except FetchFailed as e:
            logger.warning("Loading older messages of %s failed: %s", self.conversation_id, e)
            self.events.emit(FETCH_FAILED, e)
            return 0

        if self.closed:
            return 0
        added = self.timeline.merge(page)
        if added:
            self._changed()
        return added

    # Sending

    def send(self, text: str, attachments: Iterable[Any] = ()) -> Outbound:
        self._require_open()
        outbound = self.timeline.begin_send(text, attachments)
        self._changed()
        self._spawn(self._deliver(outbound))
        return outbound

    def retry(self, local_seq: int) -> Outbound:
        self._require_open()
        outbound = self.timeline.retry_send(local_seq)
        self._changed()
        self._spawn(self._deliver(outbound))
        return outbound

    async def _deliver(self, outbound: Outbound) -> None:
        try:
            message = await self.store.send_message(self.conversation_id, outbound.text, outbound.attachments)
        except ChatError as e:
            if self.closed:
                return
            logger.warning("Send %s in conversation %s failed: %s", outbound.local_seq, self.conversation_id, e)
            if self.timeline.fail_send(outbound.local_seq):
                self._changed()
                self.events.emit(SEND_FAILED, {"local_seq": outbound.local_seq, "error": e})
            return

        if self.closed:
            logger.debug("Discarding send result for closed conversation %s", self.conversation_id)
            return
        if self.timeline.confirm_send(outbound.local_seq, message):
            self._changed()

    # Realtime

    async def _subscribe(self) -> None:
        self._subscription = await self.bridge.subscribe(
            self.conversation_id,
            on_insert=self._on_insert,
            on_member_update=self._on_member_update,
            on_dropped=self._on_dropped,
        )

    async def reconnect(self) -> None:
        """Replace the realtime subscription and refetch to cover missed events."""
        self._require_open()
        if self._subscription is not None:
            try:
                await self._subscription.unsubscribe()
            except Exception:
                logger.exception("Error releasing old subscription for %s", self.conversation_id)
        await self._subscribe()
        await self.resync()

    def _on_insert(self, message: Message) -> None:
        if self.closed or self.timeline is None:
            return
        outcome = self.timeline.on_realtime_insert(message)
        if outcome in (InsertOutcome.ECHO, InsertOutcome.APPENDED):
            self._changed()
        if outcome is InsertOutcome.APPENDED and message.author_user_id != self.timeline.local_user_id:
            # The screen is open, so an inbound message is seen on arrival
            self._spawn(self._mark_read(message.created_at))

    def _on_member_update(self, member_id: int, last_read_at: Optional[datetime]) -> None:
        if self.closed or self.timeline is None:
            return
        if self.timeline.on_member_update(member_id, last_read_at):
            self._changed()

    def _on_dropped(self, error: SubscriptionDropped) -> None:
        if self.closed:
            return
        self.events.emit(SUBSCRIPTION_DROPPED, error)
        if self.gap_handler is not None:
            self._spawn(self.gap_handler(self))

    # Teardown

    async def close(self) -> None:
        """Release the subscription. In-flight sends finish but their results are dropped."""
        if self.closed:
            return
        self.closed = True
        if self._subscription is not None:
            await self._subscription.unsubscribe()
        logger.info("Closed conversation %s", self.conversation_id)

    async def flush(self) -> None:
        """Wait for background sends and read updates started so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Helpers

    async def _mark_read(self, timestamp: Optional[datetime] = None) -> None:
        try:
            await self.store.mark_read(self.conversation_id, timestamp)
        except ChatError as e:
            logger.warning("Marking conversation %s read failed: %s", self.conversation_id, e)

    def _changed(self) -> None:
        self.events.emit(MESSAGES_CHANGED, self.timeline.messages)

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background chat task failed", exc_info=task.exception())

    def _require_open(self) -> None:
        if self.timeline is None:
            raise RuntimeError("Chat session is not open.")
        if self.closed:
            raise RuntimeError("Chat session is closed.")


def build_session(client, jwt: Optional[str] = None, **kwargs) -> ChatSession:
    """Wire a session against a Supabase client."""
    identity = IdentityResolver(client, jwt=jwt)
    return ChatSession(
        identity=identity,
        directory=ConversationDirectory(client, identity),
        store=MessageStore(client, identity),
        bridge=RealtimeBridge(client),
        **kwargs,
    )
