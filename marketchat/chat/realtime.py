import logging
from datetime import datetime
from typing import Any, Callable, Optional

from pydantic import ValidationError

from marketchat.core.errors import SubscriptionDropped
from .schemas import Membership, Message

logger = logging.getLogger(__name__)

InsertHandler = Callable[[Message], None]
MemberUpdateHandler = Callable[[int, Optional[datetime]], None]
DroppedHandler = Callable[[SubscriptionDropped], None]

DROPPED_STATES = {"CHANNEL_ERROR", "TIMED_OUT", "CLOSED"}


def channel_topic(conversation_id: int) -> str:
    return f"conversation:{conversation_id}"


def _record_from_payload(payload: Any) -> Optional[dict]:
    """Row carried by a `postgres_changes` payload."""
    if not isinstance(payload, dict):
        return None
    data = payload.get("data")
    if isinstance(data, dict):
        return data.get("record") or data.get("new")
    return payload.get("record") or payload.get("new")


def _state_name(state: Any) -> str:
    return str(getattr(state, "value", state)).upper()


class Subscription:
    """Handle for one conversation channel; `unsubscribe()` is safe to call twice."""

    def __init__(self, client, channel, conversation_id: int):
        self.client = client
        self.channel = channel
        self.conversation_id = conversation_id
        self.closed = False

    async def unsubscribe(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self.client.remove_channel(self.channel)
        logger.info("Unsubscribed from %s", channel_topic(self.conversation_id))


class RealtimeBridge:
    """
    Delivers new messages and read-watermark changes of one conversation
    from Supabase Realtime.

    Delivery is at least once and unordered relative to direct calls; events
    missed while disconnected are not replayed.
    """

    def __init__(self, client):
        self.client = client

    async def subscribe(
        self,
        conversation_id: int,
        on_insert: InsertHandler,
        on_member_update: MemberUpdateHandler,
        on_dropped: Optional[DroppedHandler] = None,
    ) -> Subscription:
        row_filter = f"conversation_id=eq.{conversation_id}"
        channel = self.client.channel(channel_topic(conversation_id))
        subscription = Subscription(self.client, channel, conversation_id)

        def handle_insert(payload):
            record = _record_from_payload(payload)
            try:
                message = Message.from_row(record)
            except (KeyError, TypeError, ValidationError) as e:
                logger.warning("Dropping malformed message payload on %s: %s", channel_topic(conversation_id), e)
                return
            on_insert(message)

        def handle_member_update(payload):
            record = _record_from_payload(payload)
            try:
                member = Membership(**record)
            except (TypeError, ValidationError) as e:
                logger.warning("Dropping malformed member payload on %s: %s", channel_topic(conversation_id), e)
                return
            on_member_update(member.user_id, member.last_read_at)

        def handle_state(state, error=None):
            name = _state_name(state)
            if name == "SUBSCRIBED":
                logger.info("Subscribed to %s", channel_topic(conversation_id))
                return
            if name not in DROPPED_STATES or subscription.closed:
                return
            logger.warning("Realtime channel %s is %s: %s", channel_topic(conversation_id), name, error)
            if on_dropped is not None:
                on_dropped(SubscriptionDropped(conversation_id, name))

        channel.on_postgres_changes(
            "INSERT",
            schema="public",
            table="messages",
            filter=row_filter,
            callback=handle_insert,
        )
        channel.on_postgres_changes(
            "UPDATE",
            schema="public",
            table="conversation_members",
            filter=row_filter,
            callback=handle_member_update,
        )
        await channel.subscribe(handle_state)
        return subscription
