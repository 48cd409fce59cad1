class ChatError(Exception):
    """Base class for chat failures that stay local to one component."""


class AuthenticationMissing(ChatError):
    """No local user could be resolved from the current session."""

    def __init__(self, message: str = "No authenticated user could be resolved."):
        super().__init__(message)


class SendFailed(ChatError):
    """The backend rejected or never acknowledged an outbound message."""

    def __init__(self, conversation_id, message: str = "Failed to send message."):
        super().__init__(message)
        self.conversation_id = conversation_id


class FetchFailed(ChatError):
    """Reading history, members or conversations from the backend failed."""

    def __init__(self, conversation_id=None, message: str = "Failed to fetch data."):
        super().__init__(message)
        self.conversation_id = conversation_id


class SubscriptionDropped(ChatError):
    """The realtime channel for a conversation stopped delivering events."""

    def __init__(self, conversation_id, state: str, message: str | None = None):
        super().__init__(message or f"Realtime subscription for conversation {conversation_id} dropped ({state}).")
        self.conversation_id = conversation_id
        self.state = state
