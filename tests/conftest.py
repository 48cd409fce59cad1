import asyncio
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from itertools import count

import pytest

from marketchat.chat.schemas import Conversation, ConversationType, Membership, Message
from marketchat.core.errors import AuthenticationMissing, FetchFailed, SendFailed


ME = 1
PEER = 2
CONVERSATION_ID = 10

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    return BASE_TIME + timedelta(seconds=seconds)


def make_message(id, author=PEER, text="hello", t=0, conversation_id=CONVERSATION_ID) -> Message:
    return Message(id=id, conversation_id=conversation_id, author_user_id=author, text=text, created_at=at(t))


# Supabase query builder double


class FakeResponse:
    def __init__(self, data=None, count=None):
        self.data = data if data is not None else []
        self.count = count


class FakeQuery:
    """Records the builder chain and returns a canned response from execute()."""

    def __init__(self, table_name, outcome):
        self.table_name = table_name
        self.outcome = outcome
        self.calls = []

    def __getattr__(self, name):
        def method(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            return self

        return method

    def called(self, name):
        return [(args, kwargs) for call, args, kwargs in self.calls if call == name]

    async def execute(self):
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


class FakeSupabase:
    def __init__(self):
        self.outcomes = defaultdict(list)
        self.queries = []

    def queue(self, table, data=None, count=None, error=None):
        self.outcomes[table].append(error if error is not None else FakeResponse(data, count))

    def table(self, name):
        outcomes = self.outcomes[name]
        outcome = outcomes.pop(0) if outcomes else FakeResponse([])
        query = FakeQuery(name, outcome)
        self.queries.append(query)
        return query

    def queries_for(self, table):
        return [q for q in self.queries if q.table_name == table]


@pytest.fixture
def fake_supabase():
    return FakeSupabase()


# Collaborator doubles for ChatSession


class FakeIdentity:
    def __init__(self, user_id=ME):
        self.user_id = user_id

    async def current_user_id(self):
        return self.user_id

    async def require_user_id(self):
        if self.user_id is None:
            raise AuthenticationMissing()
        return self.user_id


class FakeDirectory:
    def __init__(self, members=None):
        self.members = members if members is not None else [Membership(user_id=ME), Membership(user_id=PEER)]
        self.fail_members = False

    async def get_or_create_direct(self, user_id):
        return Conversation(id=CONVERSATION_ID, type=ConversationType.DIRECT, direct_key=f"{ME}:{user_id}")

    async def get_or_create_group(self, community_id):
        return Conversation(id=CONVERSATION_ID, type=ConversationType.GROUP, community_id=community_id)

    async def list_members(self, conversation_id):
        if self.fail_members:
            raise FetchFailed(conversation_id)
        return list(self.members)


class FakeStore:
    def __init__(self, history=None, now=100):
        self.history = list(history or [])
        self.ids = count(500)
        self.now = now
        self.sent = []
        self.read_marks = []
        self.fail_list = False
        self.fail_send = False
        self.send_gate = None

    async def list_messages(self, conversation_id, limit=50, before=None):
        if self.fail_list:
            raise FetchFailed(conversation_id)
        rows = [m for m in self.history if before is None or m.created_at < before]
        return [m.model_copy() for m in rows[-limit:]]

    async def send_message(self, conversation_id, text, attachments=()):
        if self.send_gate is not None:
            await self.send_gate.wait()
        if self.fail_send:
            raise SendFailed(conversation_id)
        self.now += 1
        message = make_message(next(self.ids), author=ME, text=text, t=self.now, conversation_id=conversation_id)
        self.sent.append(message)
        return message

    async def mark_read(self, conversation_id, timestamp=None):
        self.read_marks.append(timestamp)
        return True


class FakeSubscription:
    def __init__(self):
        self.closed = False

    async def unsubscribe(self):
        self.closed = True


class FakeBridge:
    def __init__(self):
        self.subscriptions = []
        self.handlers = None

    async def subscribe(self, conversation_id, on_insert, on_member_update, on_dropped=None):
        self.handlers = (on_insert, on_member_update, on_dropped)
        subscription = FakeSubscription()
        self.subscriptions.append(subscription)
        return subscription

    def insert(self, message):
        self.handlers[0](message)

    def member_update(self, member_id, last_read_at):
        self.handlers[1](member_id, last_read_at)

    def drop(self, error):
        self.handlers[2](error)


@pytest.fixture
def identity():
    return FakeIdentity()


@pytest.fixture
def directory():
    return FakeDirectory()


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def bridge():
    return FakeBridge()


async def settle():
    # Let tasks spawned by the last step run to completion
    for _ in range(5):
        await asyncio.sleep(0)
