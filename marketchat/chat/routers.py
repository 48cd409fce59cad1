import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from marketchat.core.dependencies import get_current_user_id, get_identity
from marketchat.core.errors import AuthenticationMissing, FetchFailed, SendFailed
from marketchat.core.identity import IdentityResolver
from .directory import ConversationDirectory
from .store import DEFAULT_PAGE_SIZE, MessageStore
from .schemas import (
    ConversationResponseModel,
    CreateDirectConversationModel,
    CreateGroupConversationModel,
    GetConversationsResponseModel,
    GetMembersResponseModel,
    GetMessagesResponseModel,
    MarkReadModel,
    MarkReadResponseModel,
    SendMessageModel,
    SendMessageResponseModel,
    UnreadCountResponseModel,
)


logger = logging.getLogger(__name__)
router = APIRouter()


def get_directory(identity: IdentityResolver = Depends(get_identity)) -> ConversationDirectory:
    return ConversationDirectory(identity.client, identity)


def get_store(identity: IdentityResolver = Depends(get_identity)) -> MessageStore:
    return MessageStore(identity.client, identity)


def _to_http(e: Exception, detail: str) -> HTTPException:
    if isinstance(e, AuthenticationMissing):
        return HTTPException(status_code=401, detail="Invalid authentication")
    if isinstance(e, ValueError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, (SendFailed, FetchFailed)):
        return HTTPException(status_code=502, detail=str(e))
    logger.exception(detail)
    return HTTPException(status_code=500, detail=detail)


async def _require_member(directory: ConversationDirectory, conversation_id: int, user_id: int):
    members = await directory.list_members(conversation_id)
    if not members:
        raise HTTPException(status_code=404, detail="Conversation not found")
    if user_id not in {m.user_id for m in members}:
        raise HTTPException(status_code=403, detail="You are not a member of this conversation")
    return members


@router.post(
    "/conversations/direct",
    response_model=ConversationResponseModel,
    status_code=200,
)
async def get_or_create_direct_conversation(
    data: CreateDirectConversationModel,
    directory: ConversationDirectory = Depends(get_directory),
):
    """
    Get or create the direct (1-on-1) conversation with another user.

    Both orderings of the pair map to the same `direct_key`, so repeated calls
    from either side return the same conversation.

    **Input**
    - `receiver_id`: id of the other user

    **Errors**
    - 400: Receiver is the caller
    - 401: Unauthorized
    - 502: Backend error
    """
    try:
        conversation = await directory.get_or_create_direct(data.receiver_id)
        return {"conversation": conversation}
    except HTTPException:
        raise
    except Exception as e:
        raise _to_http(e, "Failed to create or fetch conversation.")


@router.post(
    "/conversations/group",
    response_model=ConversationResponseModel,
    status_code=200,
)
async def get_or_create_group_conversation(
    data: CreateGroupConversationModel,
    user_id: int = Depends(get_current_user_id),
    directory: ConversationDirectory = Depends(get_directory),
):
    """Get or create the group conversation of a community and join it."""
    try:
        conversation = await directory.get_or_create_group(data.community_id)
        await directory.add_member(conversation.id, user_id)
        return {"conversation": conversation}
    except HTTPException:
        raise
    except Exception as e:
        raise _to_http(e, "Failed to create or fetch group conversation.")


@router.get(
    "/conversations",
    response_model=GetConversationsResponseModel,
    status_code=200,
)
async def get_conversations(
    user_id: int = Depends(get_current_user_id),
    directory: ConversationDirectory = Depends(get_directory),
):
    """
    Retrieve all conversations of the authenticated user, newest membership
    first, for the inbox view.
    """
    try:
        return {"conversations": await directory.list_user_conversations(user_id)}
    except HTTPException:
        raise
    except Exception as e:
        raise _to_http(e, "Failed to fetch conversations")


@router.get(
    "/conversations/{conversation_id}/members",
    response_model=GetMembersResponseModel,
    status_code=200,
)
async def get_members(
    conversation_id: int,
    user_id: int = Depends(get_current_user_id),
    directory: ConversationDirectory = Depends(get_directory),
):
    try:
        members = await _require_member(directory, conversation_id, user_id)
        return {"members": members}
    except HTTPException:
        raise
    except Exception as e:
        raise _to_http(e, "Failed to fetch members")


@router.get(
    "/messages/{conversation_id}",
    response_model=GetMessagesResponseModel,
    status_code=200,
)
async def get_messages(
    conversation_id: int,
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=200),
    before: Optional[datetime] = None,
    user_id: int = Depends(get_current_user_id),
    directory: ConversationDirectory = Depends(get_directory),
    store: MessageStore = Depends(get_store),
):
    """
    Retrieve one page of messages, oldest to newest.

    **Query Parameters**
    - `limit`: page size (1-200)
    - `before`: only messages created strictly before this timestamp

    **Errors**
    - 401: Invalid or expired authentication token
    - 403: User is not a member of the conversation
    - 404: Conversation does not exist
    - 502: Backend error
    """
    try:
        await _require_member(directory, conversation_id, user_id)
        messages = await store.list_messages(conversation_id, limit=limit, before=before)
        return {"messages": messages}
    except HTTPException:
        raise
    except Exception as e:
        raise _to_http(e, "Failed to retrieve messages")


@router.post(
    "/messages",
    response_model=SendMessageResponseModel,
    status_code=201,
)
async def send_message(
    data: SendMessageModel,
    user_id: int = Depends(get_current_user_id),
    directory: ConversationDirectory = Depends(get_directory),
    store: MessageStore = Depends(get_store),
):
    """
    Send a message to a conversation the user is a member of.

    **Errors**
    - 401: Unauthorized
    - 403: User is not a member of the conversation
    - 404: Conversation not found
    - 502: Backend rejected the message
    """
    try:
        await _require_member(directory, data.conversation_id, user_id)
        message = await store.send_message(data.conversation_id, data.content, data.attachments)
        return {"message": message}
    except HTTPException:
        raise
    except Exception as e:
        raise _to_http(e, "Failed to send message.")


@router.post(
    "/conversations/{conversation_id}/read",
    response_model=MarkReadResponseModel,
    status_code=200,
)
async def mark_conversation_read(
    conversation_id: int,
    data: MarkReadModel,
    store: MessageStore = Depends(get_store),
):
    """Advance the caller's read watermark. Older timestamps leave it unchanged."""
    try:
        updated = await store.mark_read(conversation_id, data.timestamp)
        return {"updated": updated}
    except HTTPException:
        raise
    except Exception as e:
        raise _to_http(e, "Failed to update read state.")


@router.get(
    "/conversations/{conversation_id}/unread",
    response_model=UnreadCountResponseModel,
    status_code=200,
)
async def get_unread_count(
    conversation_id: int,
    since: Optional[datetime] = None,
    user_id: int = Depends(get_current_user_id),
    directory: ConversationDirectory = Depends(get_directory),
    store: MessageStore = Depends(get_store),
):
    """
    Count messages from other members newer than `since`, defaulting to the
    caller's own read watermark.
    """
    try:
        members = await _require_member(directory, conversation_id, user_id)
        if since is None:
            since = next((m.last_read_at for m in members if m.user_id == user_id), None)
        unread = await store.count_unread(conversation_id, user_id, since)
        return {"conversation_id": conversation_id, "unread": unread}
    except HTTPException:
        raise
    except Exception as e:
        raise _to_http(e, "Failed to count unread messages.")
