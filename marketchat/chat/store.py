import logging
import httpx
from datetime import datetime, timezone
from typing import Any, Iterable

from supabase import PostgrestAPIError

from marketchat.core.errors import FetchFailed, SendFailed
from marketchat.core.identity import IdentityResolver
from .schemas import Message

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


class MessageStore:
    """Reads and writes the `messages` table and member read watermarks."""

    def __init__(self, client, identity: IdentityResolver):
        self.client = client
        self.identity = identity

    async def list_messages(
        self,
        conversation_id: int,
        limit: int = DEFAULT_PAGE_SIZE,
        before: datetime | None = None,
    ) -> list[Message]:
        """
        Most recent `limit` messages older than `before` (or the newest page),
        returned oldest first.
        """
        if not conversation_id:
            raise ValueError("conversation_id is required")

        query = (
            self.client.table("messages")
            .select("*")
            .eq("conversation_id", conversation_id)
            .is_("deleted_at", "null")
            .order("created_at", desc=True)
            .limit(limit)
        )
        if before is not None:
            query = query.lt("created_at", _iso(before))

        try:
            res = await query.execute()
        except (PostgrestAPIError, httpx.HTTPError) as e:
            logger.error("Error listing messages for %s: %s", conversation_id, e)
            raise FetchFailed(conversation_id, "Failed to retrieve messages.") from e

        rows = res.data or []
        logger.debug("list_messages: conversation=%s count=%s", conversation_id, len(rows))
        return [Message.from_row(row) for row in reversed(rows)]

    async def send_message(
        self,
        conversation_id: int,
        text: str,
        attachments: Iterable[Any] = (),
    ) -> Message:
        if not conversation_id:
            raise ValueError("conversation_id is required")
        user_id = await self.identity.require_user_id()

        try:
            res = (
                await self.client.table("messages")
                .insert(
                    {
                        "conversation_id": conversation_id,
                        "user_id": user_id,
                        "content": text,
                        "attachments": list(attachments),
                    }
                )
                .execute()
            )
        except (PostgrestAPIError, httpx.HTTPError) as e:
            logger.error("Error sending message to %s: %s", conversation_id, e)
            raise SendFailed(conversation_id) from e

        if not res.data:
            raise SendFailed(conversation_id, "Backend returned no row for the sent message.")
        return Message.from_row(res.data[0])

    async def mark_read(self, conversation_id: int, timestamp: datetime | None = None) -> bool:
        """
        Advance the local user's `last_read_at` to `timestamp` (default now).

        Only rows whose watermark is unset or older are touched, so replaying
        an old timestamp is a no-op. Returns whether the watermark moved.
        """
        if not conversation_id:
            raise ValueError("conversation_id is required")
        user_id = await self.identity.require_user_id()
        stamp = _iso(timestamp or datetime.now(timezone.utc))

        try:
            res = (
                await self.client.table("conversation_members")
                .update({"last_read_at": stamp})
                .eq("conversation_id", conversation_id)
                .eq("user_id", user_id)
                .or_(f"last_read_at.is.null,last_read_at.lt.{stamp}")
                .execute()
            )
        except (PostgrestAPIError, httpx.HTTPError) as e:
            logger.error("Error marking %s read: %s", conversation_id, e)
            raise FetchFailed(conversation_id, "Failed to update read state.") from e

        return bool(res.data)

    async def count_unread(
        self,
        conversation_id: int,
        user_id: int | None,
        since: datetime | None,
    ) -> int:
        """Messages newer than `since` written by anyone other than `user_id`."""
        if not conversation_id:
            raise ValueError("conversation_id is required")

        query = (
            self.client.table("messages")
            .select("id", count="exact", head=True)
            .eq("conversation_id", conversation_id)
        )
        if since is not None:
            query = query.gt("created_at", _iso(since))
        if user_id is not None:
            query = query.neq("user_id", user_id)

        try:
            res = await query.execute()
        except (PostgrestAPIError, httpx.HTTPError) as e:
            logger.error("Error counting unread for %s/%s: %s", conversation_id, user_id, e)
            raise FetchFailed(conversation_id, "Failed to count unread messages.") from e

        return res.count or 0

    async def delete_message(self, message_id: int) -> bool:
        """Soft delete; the row stays but is excluded from history pages."""
        try:
            await (
                self.client.table("messages")
                .update({"deleted_at": _iso(datetime.now(timezone.utc))})
                .eq("id", message_id)
                .execute()
            )
        except (PostgrestAPIError, httpx.HTTPError) as e:
            raise FetchFailed(message=f"Failed to delete message {message_id}.") from e
        return True

    async def edit_message(self, message_id: int, text: str) -> Message | None:
        try:
            res = (
                await self.client.table("messages")
                .update({"content": text})
                .eq("id", message_id)
                .execute()
            )
        except (PostgrestAPIError, httpx.HTTPError) as e:
            raise FetchFailed(message=f"Failed to edit message {message_id}.") from e
        return Message.from_row(res.data[0]) if res.data else None
