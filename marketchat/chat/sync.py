import bisect
import itertools
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from .schemas import DeliveryState, Membership, Message

logger = logging.getLogger(__name__)


class OutboundState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class InsertOutcome(str, Enum):
    IGNORED = "ignored"  # other conversation
    DUPLICATE = "duplicate"
    ECHO = "echo"  # reconciled with a pending optimistic send
    APPENDED = "appended"


@dataclass
class Outbound:
    """One optimistic send: `PENDING -> CONFIRMED | FAILED`, and `FAILED -> PENDING` on retry."""

    local_seq: int
    temp_id: str
    text: str
    attachments: list[Any] = field(default_factory=list)
    state: OutboundState = OutboundState.PENDING
    final_id: Optional[int] = None
    # Newest server id listed when the send began; its row can only get a larger id
    floor_id: Optional[int] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationTimeline:
    """
    In-memory message list of one open conversation.

    Merges three sources into one list sorted by `created_at` (ties keep
    arrival order) with no two entries for the same server message:

    * history pages from the message store (`seed`, `merge`)
    * optimistic sends and their direct responses (`begin_send`, `confirm_send`, `fail_send`)
    * realtime inserts and read-watermark updates (`on_realtime_insert`, `on_member_update`)

    Every method is a single synchronous step; callers run them on one event
    loop so no step interleaves with another.
    """

    def __init__(
        self,
        conversation_id: int,
        local_user_id: int,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.conversation_id = conversation_id
        self.local_user_id = local_user_id
        self._clock = clock
        self._entries: list[Message] = []
        self._watermarks: dict[int, datetime] = {}
        self._outbound: dict[int, Outbound] = {}
        self._seq = itertools.count(1)

    # State

    @property
    def messages(self) -> list[Message]:
        """Snapshot of the rendered list."""
        return [entry.model_copy() for entry in self._entries]

    @property
    def peer_last_read_at(self) -> Optional[datetime]:
        # Direct chat: the other member. Group: the furthest reader.
        return max(self._watermarks.values(), default=None)

    def watermark_of(self, user_id: int) -> Optional[datetime]:
        return self._watermarks.get(user_id)

    def outbound(self, local_seq: int) -> Optional[Outbound]:
        return self._outbound.get(local_seq)

    def unresolved(self) -> list[Outbound]:
        return [o for o in self._outbound.values() if o.state is not OutboundState.CONFIRMED]

    def oldest_server_created_at(self) -> Optional[datetime]:
        for entry in self._entries:
            if not entry.is_temporary:
                return entry.created_at
        return None

    def __len__(self) -> int:
        return len(self._entries)

    # History

    def seed(self, page: Iterable[Message], members: Iterable[Membership] = ()) -> None:
        """
        Replace the list with a freshly fetched page.

        Pending and failed optimistic entries survive a reseed so a resync
        never drops text the user typed, unless the page already holds the
        server row of that send.
        """
        for member in members:
            if member.last_read_at is not None:
                self._advance_watermark(member.user_id, member.last_read_at)

        kept = [entry for entry in map(self._entry_for, self.unresolved()) if entry is not None]
        self._entries = []
        listed = []
        for message in page:
            if message.conversation_id != self.conversation_id:
                continue
            if self._index_of(message.id) is not None:
                continue
            self._insert(self._authoritative(message))
            listed.append(message)
        for entry in kept:
            self._insert(entry)
        for message in listed:
            self._claim_listed(message)

        logger.debug(
            "Seeded conversation %s with %s messages (%s unresolved sends kept)",
            self.conversation_id,
            len(self._entries),
            len(self.unresolved()),
        )

    def merge(self, messages: Iterable[Message]) -> int:
        """Insert older/catch-up messages without replacing anything. Returns how many were new."""
        added = 0
        for message in messages:
            if message.conversation_id != self.conversation_id or self._index_of(message.id) is not None:
                continue
            self._insert(self._authoritative(message))
            self._claim_listed(message)
            added += 1
        return added

    # Outbound

    def begin_send(self, text: str, attachments: Iterable[Any] = ()) -> Outbound:
        text = (text or "").strip()
        if not text:
            raise ValueError("Cannot send an empty message.")

        local_seq = next(self._seq)
        outbound = Outbound(
            local_seq=local_seq,
            temp_id=f"tmp-{time.time_ns()}-{local_seq}",
            text=text,
            attachments=list(attachments),
            floor_id=max((e.id for e in self._entries if not e.is_temporary), default=None),
        )
        self._outbound[local_seq] = outbound

        created_at = self._clock()
        if self._entries and self._entries[-1].created_at > created_at:
            # Device clock behind the server: still render at the tail
            created_at = self._entries[-1].created_at

        self._insert(
            Message(
                id=outbound.temp_id,
                conversation_id=self.conversation_id,
                author_user_id=self.local_user_id,
                text=text,
                created_at=created_at,
                delivery_state=DeliveryState.SENT,
                attachments=outbound.attachments,
                local_seq=local_seq,
            )
        )
        return outbound

    def confirm_send(self, local_seq: int, message: Message) -> bool:
        """
        Apply the direct response of a send. Returns whether the list changed.

        The temp entry is dropped when the server id is already listed (the
        realtime echo won), otherwise rewritten to the server id and time.
        """
        outbound = self._outbound.get(local_seq)
        if outbound is None:
            logger.debug("confirm_send for unknown local_seq %s", local_seq)
            return False

        if outbound.state is OutboundState.CONFIRMED:
            if outbound.final_id == message.id or self._index_of(message.id) is not None:
                return False
            # The text fallback gave this send's entry to a sibling with the
            # same text; this server message still needs its own entry.
            self._insert(self._authoritative(message))
            return True

        outbound.state = OutboundState.CONFIRMED
        outbound.final_id = message.id

        temp_index = self._index_of(outbound.temp_id)
        if self._index_of(message.id) is not None:
            if temp_index is not None:
                del self._entries[temp_index]
            return temp_index is not None

        if temp_index is None:
            self._insert(self._authoritative(message))
            return True

        self._rewrite(temp_index, message, local_seq)
        return True

    def fail_send(self, local_seq: int) -> bool:
        outbound = self._outbound.get(local_seq)
        if outbound is None or outbound.state is not OutboundState.PENDING:
            # Confirmed already (echo arrived first): the message exists server side
            return False

        outbound.state = OutboundState.FAILED
        index = self._index_of(outbound.temp_id)
        if index is not None:
            self._entries[index].delivery_state = DeliveryState.FAILED
        return True

    def retry_send(self, local_seq: int) -> Outbound:
        outbound = self._outbound.get(local_seq)
        if outbound is None or outbound.state is not OutboundState.FAILED:
            raise ValueError(f"No failed send with local_seq {local_seq}.")

        outbound.state = OutboundState.PENDING
        index = self._index_of(outbound.temp_id)
        if index is not None:
            self._entries[index].delivery_state = DeliveryState.SENT
        return outbound

    # Realtime

    def on_realtime_insert(self, message: Message) -> InsertOutcome:
        if message.conversation_id != self.conversation_id:
            return InsertOutcome.IGNORED

        if self._index_of(message.id) is not None:
            if self._claim_listed(message):
                return InsertOutcome.ECHO
            return InsertOutcome.DUPLICATE

        if message.author_user_id == self.local_user_id:
            outbound = self._match_echo_by_text(message)
            if outbound is not None:
                outbound.state = OutboundState.CONFIRMED
                outbound.final_id = message.id
                index = self._index_of(outbound.temp_id)
                if index is not None:
                    self._rewrite(index, message, outbound.local_seq)
                else:
                    self._insert(self._authoritative(message))
                return InsertOutcome.ECHO

        self._insert(self._authoritative(message))
        return InsertOutcome.APPENDED

    def on_member_update(self, member_id: int, last_read_at: Optional[datetime]) -> bool:
        """
        Apply a member's new read watermark. Returns whether it advanced.

        Older or equal timestamps are ignored, so reordered updates never
        downgrade a message from `read`. Only confirmed `delivered` entries
        are upgraded; a `sent` entry picks up `read` when its send confirms.
        """
        if member_id == self.local_user_id or last_read_at is None:
            return False
        return self._advance_watermark(member_id, last_read_at)

    # Internals

    def _match_echo_by_text(self, message: Message) -> Optional[Outbound]:
        # Last resort for a server row that beats the direct response: the
        # oldest pending send with identical text, then the oldest failed one
        # (the request may have timed out after the row was stored).
        candidates = [
            outbound
            for _, outbound in sorted(self._outbound.items())
            if outbound.text == message.text and self._may_own(outbound, message)
        ]
        for state in (OutboundState.PENDING, OutboundState.FAILED):
            for outbound in candidates:
                if outbound.state is state:
                    return outbound
        return None

    @staticmethod
    def _may_own(outbound: Outbound, message: Message) -> bool:
        if outbound.floor_id is None or not isinstance(message.id, int):
            return True
        return message.id > outbound.floor_id

    def _claim_listed(self, message: Message) -> bool:
        """Settle the unresolved send a listed local message belongs to and drop its temp entry."""
        if message.author_user_id != self.local_user_id:
            return False
        if any(o.final_id == message.id for o in self._outbound.values()):
            return False
        outbound = self._match_echo_by_text(message)
        if outbound is None:
            return False

        outbound.state = OutboundState.CONFIRMED
        outbound.final_id = message.id
        temp_index = self._index_of(outbound.temp_id)
        if temp_index is not None:
            del self._entries[temp_index]
        self._entries[self._index_of(message.id)].local_seq = outbound.local_seq
        logger.debug("Send %s settled by listed message %s", outbound.local_seq, message.id)
        return True

    def _advance_watermark(self, member_id: int, last_read_at: datetime) -> bool:
        if member_id == self.local_user_id:
            return False
        current = self._watermarks.get(member_id)
        if current is not None and last_read_at <= current:
            return False

        self._watermarks[member_id] = last_read_at
        peer = self.peer_last_read_at
        for entry in self._entries:
            if entry.delivery_state is DeliveryState.DELIVERED and entry.created_at <= peer:
                entry.delivery_state = DeliveryState.READ
        return True

    def _state_for(self, message: Message) -> Optional[DeliveryState]:
        if message.author_user_id != self.local_user_id:
            return None
        peer = self.peer_last_read_at
        if peer is not None and message.created_at <= peer:
            return DeliveryState.READ
        return DeliveryState.DELIVERED

    def _authoritative(self, message: Message) -> Message:
        return message.model_copy(update={"delivery_state": self._state_for(message)})

    def _rewrite(self, index: int, message: Message, local_seq: int) -> None:
        del self._entries[index]
        entry = self._authoritative(message)
        entry.local_seq = local_seq
        self._insert(entry)

    def _entry_for(self, outbound: Outbound) -> Optional[Message]:
        index = self._index_of(outbound.temp_id)
        return self._entries[index] if index is not None else None

    def _index_of(self, message_id) -> Optional[int]:
        for index in range(len(self._entries) - 1, -1, -1):
            if self._entries[index].id == message_id:
                return index
        return None

    def _insert(self, entry: Message) -> None:
        position = bisect.bisect_right(self._entries, entry.created_at, key=lambda m: m.created_at)
        self._entries.insert(position, entry)
