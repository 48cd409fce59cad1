import asyncio

import pytest

from conftest import CONVERSATION_ID, ME, PEER, at, make_message, settle
from marketchat.chat.schemas import DeliveryState
from marketchat.chat.session import (
    FETCH_FAILED,
    MESSAGES_CHANGED,
    SEND_FAILED,
    SUBSCRIPTION_DROPPED,
    ChatSession,
    reconnect_and_resync,
)
from marketchat.core.errors import AuthenticationMissing, SubscriptionDropped
from marketchat.utils.event_channel import EventChannel


@pytest.fixture
def events():
    return EventChannel()


@pytest.fixture
def session(identity, directory, store, bridge, events):
    return ChatSession(identity, directory, store, bridge, events=events, page_size=20, clock=lambda: at(1000))


def record(events, name):
    received = []
    events.on(name, received.append)
    return received


@pytest.mark.asyncio
async def test_open_seeds_marks_read_and_subscribes(session, store, bridge):
    store.history = [make_message(1, author=PEER, t=10), make_message(2, author=ME, t=20)]

    await session.open_direct(PEER)

    assert [m.id for m in session.messages] == [1, 2]
    assert session.messages[1].delivery_state is DeliveryState.DELIVERED
    assert store.read_marks == [None]
    assert len(bridge.subscriptions) == 1


@pytest.mark.asyncio
async def test_open_group_resolves_community_conversation(session, bridge):
    await session.open_group(77)

    assert session.conversation_id == CONVERSATION_ID
    assert len(bridge.subscriptions) == 1


@pytest.mark.asyncio
async def test_open_without_local_user_fails(session, identity, bridge):
    identity.user_id = None

    with pytest.raises(AuthenticationMissing):
        await session.open(CONVERSATION_ID)

    assert bridge.subscriptions == []


@pytest.mark.asyncio
async def test_fetch_failure_leaves_empty_list_and_reports(session, store, events, bridge):
    failures = record(events, FETCH_FAILED)
    store.fail_list = True

    await session.open(CONVERSATION_ID)

    assert session.messages == []
    assert len(failures) == 1
    assert len(bridge.subscriptions) == 1

    store.fail_list = False
    store.history = [make_message(1, t=1)]
    assert await session.resync()
    assert [m.id for m in session.messages] == [1]


@pytest.mark.asyncio
async def test_send_is_optimistic_then_confirmed(session, store, events):
    changes = record(events, MESSAGES_CHANGED)
    await session.open(CONVERSATION_ID)

    outbound = session.send("hi")

    assert session.messages[-1].id == outbound.temp_id
    assert session.messages[-1].delivery_state is DeliveryState.SENT

    await session.flush()

    assert [m.id for m in session.messages] == [500]
    assert session.messages[0].delivery_state is DeliveryState.DELIVERED
    assert changes[-1][0].id == 500


@pytest.mark.asyncio
async def test_send_rejects_blank_text(session):
    await session.open(CONVERSATION_ID)

    with pytest.raises(ValueError):
        session.send("   ")


@pytest.mark.asyncio
async def test_send_before_open_is_an_error(session):
    with pytest.raises(RuntimeError):
        session.send("hi")


@pytest.mark.asyncio
async def test_failed_send_is_kept_and_retry_delivers(session, store, events):
    failures = record(events, SEND_FAILED)
    await session.open(CONVERSATION_ID)
    store.fail_send = True

    outbound = session.send("hi")
    await session.flush()

    assert session.messages[0].delivery_state is DeliveryState.FAILED
    assert failures[0]["local_seq"] == outbound.local_seq

    store.fail_send = False
    session.retry(outbound.local_seq)
    await session.flush()

    assert [m.id for m in session.messages] == [500]
    assert session.messages[0].delivery_state is DeliveryState.DELIVERED


@pytest.mark.asyncio
async def test_echo_arriving_before_send_response(session, store, bridge):
    await session.open(CONVERSATION_ID)
    store.send_gate = asyncio.Event()

    session.send("hi")
    await settle()
    bridge.insert(make_message(500, author=ME, text="hi", t=1001))

    assert [m.id for m in session.messages] == [500]

    store.send_gate.set()
    await session.flush()

    assert [m.id for m in session.messages] == [500]
    assert session.messages[0].delivery_state is DeliveryState.DELIVERED


@pytest.mark.asyncio
async def test_resync_during_in_flight_send_keeps_one_entry(session, store, bridge):
    await session.open(CONVERSATION_ID)
    store.send_gate = asyncio.Event()

    session.send("hi")
    await settle()
    # Stored on the server before the response came back
    store.history.append(make_message(500, author=ME, text="hi", t=1001))
    await session.resync()
    bridge.insert(make_message(500, author=ME, text="hi", t=1001))

    assert [m.id for m in session.messages] == [500]

    store.send_gate.set()
    await session.flush()

    assert [m.id for m in session.messages] == [500]
    assert session.messages[0].delivery_state is DeliveryState.DELIVERED


@pytest.mark.asyncio
async def test_send_timing_out_after_commit_is_not_reported_failed(session, store, events):
    failures = record(events, SEND_FAILED)
    await session.open(CONVERSATION_ID)
    store.send_gate = asyncio.Event()

    session.send("hi")
    await settle()
    store.history.append(make_message(500, author=ME, text="hi", t=1001))
    await session.resync()
    store.fail_send = True
    store.send_gate.set()
    await session.flush()

    assert [m.id for m in session.messages] == [500]
    assert session.messages[0].delivery_state is DeliveryState.DELIVERED
    assert failures == []


@pytest.mark.asyncio
async def test_inbound_message_marks_conversation_read(session, store, bridge):
    await session.open(CONVERSATION_ID)

    bridge.insert(make_message(9, author=PEER, t=50))
    bridge.insert(make_message(9, author=PEER, t=50))
    await session.flush()

    assert [m.id for m in session.messages] == [9]
    assert store.read_marks == [None, at(50)]


@pytest.mark.asyncio
async def test_member_update_upgrades_own_messages(session, store, bridge, events):
    store.history = [make_message(1, author=ME, t=10)]
    await session.open(CONVERSATION_ID)
    changes = record(events, MESSAGES_CHANGED)

    bridge.member_update(PEER, at(10))
    bridge.member_update(PEER, at(5))

    assert session.messages[0].delivery_state is DeliveryState.READ
    assert len(changes) == 1


@pytest.mark.asyncio
async def test_drop_is_reported_and_gap_handler_resyncs(identity, directory, store, bridge, events):
    session = ChatSession(identity, directory, store, bridge, events=events, gap_handler=reconnect_and_resync)
    drops = record(events, SUBSCRIPTION_DROPPED)
    await session.open(CONVERSATION_ID)
    first = bridge.subscriptions[0]

    # Sent by the peer while the channel was down
    store.history.append(make_message(3, author=PEER, t=30))
    bridge.drop(SubscriptionDropped(CONVERSATION_ID, "CHANNEL_ERROR"))
    await session.flush()

    assert len(drops) == 1
    assert first.closed
    assert len(bridge.subscriptions) == 2
    assert [m.id for m in session.messages] == [3]


@pytest.mark.asyncio
async def test_drop_without_gap_handler_only_reports(session, store, bridge, events):
    drops = record(events, SUBSCRIPTION_DROPPED)
    await session.open(CONVERSATION_ID)

    bridge.drop(SubscriptionDropped(CONVERSATION_ID, "TIMED_OUT"))
    await session.flush()

    assert drops[0].state == "TIMED_OUT"
    assert len(bridge.subscriptions) == 1


@pytest.mark.asyncio
async def test_load_older_merges_previous_page(identity, directory, store, bridge):
    store.history = [make_message(i, t=i) for i in range(1, 6)]
    session = ChatSession(identity, directory, store, bridge, page_size=2)
    await session.open(CONVERSATION_ID)

    assert [m.id for m in session.messages] == [4, 5]
    assert await session.load_older() == 2
    assert [m.id for m in session.messages] == [2, 3, 4, 5]


@pytest.mark.asyncio
async def test_close_unsubscribes_and_discards_late_results(session, store, bridge):
    await session.open(CONVERSATION_ID)
    store.send_gate = asyncio.Event()
    session.send("hi")
    before = session.messages

    await session.close()
    await session.close()
    bridge.insert(make_message(9, author=PEER, t=50))
    store.send_gate.set()
    await session.flush()

    assert bridge.subscriptions[0].closed
    assert session.messages == before
    assert store.sent  # the send itself still completed


@pytest.mark.asyncio
async def test_async_context_manager_closes(identity, directory, store, bridge):
    async with ChatSession(identity, directory, store, bridge) as session:
        await session.open(CONVERSATION_ID)

    assert session.closed
    assert bridge.subscriptions[0].closed


def test_build_session_shares_one_identity(fake_supabase):
    from marketchat.chat.session import build_session

    session = build_session(fake_supabase, jwt="token", page_size=10)

    assert session.directory.identity is session.identity
    assert session.store.identity is session.identity
    assert session.identity.jwt == "token"
    assert session.bridge.client is fake_supabase
    assert session.page_size == 10
