import logging
import httpx

from supabase import PostgrestAPIError

from marketchat.core.errors import FetchFailed
from marketchat.core.identity import IdentityResolver
from .schemas import Conversation, ConversationSummary, ConversationType, Membership

logger = logging.getLogger(__name__)


def direct_key(user_a: int, user_b: int) -> str:
    """Canonical order-independent key for a two-person conversation."""
    a, b = sorted([int(user_a), int(user_b)])
    return f"{a}:{b}"


class ConversationDirectory:
    """
    Resolves and creates conversations in the `conversations` /
    `conversation_members` tables.

    There is at most one direct conversation per unordered user pair (unique
    `direct_key`) and at most one group conversation per community.
    """

    def __init__(self, client, identity: IdentityResolver):
        self.client = client
        self.identity = identity

    async def get_or_create_direct(self, user_id: int) -> Conversation:
        if not user_id:
            raise ValueError("user_id is required")
        current_user_id = await self.identity.require_user_id()
        if int(user_id) == current_user_id:
            raise ValueError("Cannot open a direct conversation with yourself.")

        key = direct_key(current_user_id, user_id)
        logger.debug("get_or_create_direct: direct_key=%s", key)

        # 1. Existing conversation for this pair
        existing = await self._find_one(type=ConversationType.DIRECT.value, direct_key=key)
        if existing:
            return existing

        # 2. Create conversation
        try:
            convo_res = (
                await self.client.table("conversations")
                .insert({"type": ConversationType.DIRECT.value, "direct_key": key})
                .execute()
            )
        except (PostgrestAPIError, httpx.HTTPError) as e:
            # Lost a race on the unique direct_key; the other writer's row wins
            logger.info("Direct conversation %s created concurrently: %s", key, e)
            existing = await self._find_one(type=ConversationType.DIRECT.value, direct_key=key)
            if existing:
                return existing
            raise FetchFailed(message="Failed to create direct conversation.") from e

        if not convo_res.data:
            raise FetchFailed(message="Failed to create direct conversation.")
        conversation = Conversation(**convo_res.data[0])

        # 3. Add both members
        await self.add_member(conversation.id, current_user_id)
        await self.add_member(conversation.id, int(user_id))

        logger.info("Created direct conversation %s (%s)", conversation.id, key)
        return conversation

    async def get_or_create_group(self, community_id: int) -> Conversation:
        if not community_id:
            raise ValueError("community_id is required")

        existing = await self.find_group_by_community(community_id)
        if existing:
            return existing

        try:
            res = (
                await self.client.table("conversations")
                .insert({"type": ConversationType.GROUP.value, "community_id": community_id})
                .execute()
            )
        except (PostgrestAPIError, httpx.HTTPError) as e:
            existing = await self.find_group_by_community(community_id)
            if existing:
                return existing
            raise FetchFailed(message="Failed to create group conversation.") from e

        if not res.data:
            raise FetchFailed(message="Failed to create group conversation.")
        conversation = Conversation(**res.data[0])
        logger.info("Created group conversation %s for community %s", conversation.id, community_id)
        return conversation

    async def find_group_by_community(self, community_id: int) -> Conversation | None:
        if not community_id:
            raise ValueError("community_id is required")
        return await self._find_one(type=ConversationType.GROUP.value, community_id=community_id)

    async def add_member(self, conversation_id: int, user_id: int, role: str = "member") -> bool:
        """Add a membership row unless it already exists. Returns whether a row was added."""
        if not conversation_id or not user_id:
            raise ValueError("conversation_id and user_id are required")
        try:
            exists = (
                await self.client.table("conversation_members")
                .select("id")
                .eq("conversation_id", conversation_id)
                .eq("user_id", user_id)
                .limit(1)
                .execute()
            )
            if exists.data:
                return False

            await self.client.table("conversation_members").insert(
                {"conversation_id": conversation_id, "user_id": user_id, "role": role}
            ).execute()
        except (PostgrestAPIError, httpx.HTTPError) as e:
            logger.error("Error adding member %s to conversation %s: %s", user_id, conversation_id, e)
            raise FetchFailed(conversation_id, "Failed to add conversation member.") from e
        return True

    async def remove_member(self, conversation_id: int, user_id: int) -> bool:
        if not conversation_id or not user_id:
            raise ValueError("conversation_id and user_id are required")
        try:
            await (
                self.client.table("conversation_members")
                .delete()
                .eq("conversation_id", conversation_id)
                .eq("user_id", user_id)
                .execute()
            )
        except (PostgrestAPIError, httpx.HTTPError) as e:
            raise FetchFailed(conversation_id, "Failed to remove conversation member.") from e
        return True

    async def list_members(self, conversation_id: int) -> list[Membership]:
        if not conversation_id:
            raise ValueError("conversation_id is required")
        try:
            res = (
                await self.client.table("conversation_members")
                .select("user_id, last_read_at, role")
                .eq("conversation_id", conversation_id)
                .execute()
            )
        except (PostgrestAPIError, httpx.HTTPError) as e:
            logger.error("Error listing members of %s: %s", conversation_id, e)
            raise FetchFailed(conversation_id, "Failed to list conversation members.") from e

        return [Membership(conversation_id=conversation_id, **row) for row in res.data or []]

    async def list_user_conversations(self, user_id: int) -> list[ConversationSummary]:
        """
        Every conversation `user_id` takes part in.

        Membership rows are authoritative. Direct conversations whose key names
        the user, and conversations the user has written in, are merged in as
        well so that a missing membership row does not hide a chat; those two
        lookups are best effort.
        """
        if not user_id:
            raise ValueError("user_id is required")

        try:
            res = (
                await self.client.table("conversation_members")
                .select("conversation_id, last_read_at, conversations:conversation_id(*)")
                .eq("user_id", user_id)
                .order("joined_at", desc=True)
                .execute()
            )
        except (PostgrestAPIError, httpx.HTTPError) as e:
            logger.error("Error listing conversations of user %s: %s", user_id, e)
            raise FetchFailed(message="Failed to list conversations.") from e

        summaries = [
            ConversationSummary(
                conversation_id=row["conversation_id"],
                conversation=row.get("conversations"),
                last_read_at=row.get("last_read_at"),
            )
            for row in res.data or []
        ]
        logger.debug("list_user_conversations: %s membership rows", len(summaries))

        seen = {s.conversation_id for s in summaries}

        try:
            direct_res = (
                await self.client.table("conversations")
                .select("id, type, community_id, direct_key")
                .eq("type", ConversationType.DIRECT.value)
                .or_(f"direct_key.like.{user_id}:%,direct_key.like.%:{user_id}")
                .execute()
            )
            for row in direct_res.data or []:
                # like-patterns also match e.g. "12:3" for user 2; keep exact halves only
                if str(user_id) in row.get("direct_key", "").split(":") and row["id"] not in seen:
                    summaries.append(ConversationSummary(conversation_id=row["id"], conversation=row))
                    seen.add(row["id"])
        except (PostgrestAPIError, httpx.HTTPError) as e:
            logger.error("Error listing direct conversations by key for %s: %s", user_id, e)

        try:
            msg_res = (
                await self.client.table("messages")
                .select("conversation_id")
                .eq("user_id", user_id)
                .execute()
            )
            missing = sorted(
                {row["conversation_id"] for row in msg_res.data or [] if row.get("conversation_id")} - seen
            )
            if missing:
                conv_res = (
                    await self.client.table("conversations")
                    .select("id, type, community_id, direct_key")
                    .in_("id", missing)
                    .execute()
                )
                for row in conv_res.data or []:
                    summaries.append(ConversationSummary(conversation_id=row["id"], conversation=row))
                    seen.add(row["id"])
        except (PostgrestAPIError, httpx.HTTPError) as e:
            logger.error("Error adding conversations from messages of %s: %s", user_id, e)

        logger.debug("list_user_conversations: %s total", len(summaries))
        return summaries

    async def _find_one(self, **filters) -> Conversation | None:
        query = self.client.table("conversations").select("*")
        for column, value in filters.items():
            query = query.eq(column, value)
        try:
            res = await query.limit(1).execute()
        except (PostgrestAPIError, httpx.HTTPError) as e:
            logger.error("Error looking up conversation %s: %s", filters, e)
            raise FetchFailed(message="Failed to look up conversation.") from e
        if not res.data:
            return None
        return Conversation(**res.data[0])
