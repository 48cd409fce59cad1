import logging

from marketchat.utils.event_channel import EventChannel


def test_emit_reaches_handlers_in_order():
    channel = EventChannel()
    seen = []
    channel.on("total", lambda payload: seen.append(("a", payload)))
    channel.on("total", lambda payload: seen.append(("b", payload)))

    assert channel.emit("total", 1299) == 2
    assert seen == [("a", 1299), ("b", 1299)]


def test_unsubscribe_callable_removes_handler():
    channel = EventChannel()
    seen = []
    off = channel.on("total", seen.append)

    off()

    assert channel.emit("total", 1) == 0
    assert channel.listener_count("total") == 0
    assert seen == []


def test_failing_handler_is_logged_and_others_still_run(caplog):
    channel = EventChannel()
    seen = []

    def broken(_):
        raise RuntimeError("boom")

    channel.on("total", broken)
    channel.on("total", seen.append)

    with caplog.at_level(logging.ERROR):
        channel.emit("total", 5)

    assert seen == [5]
    assert "total" in caplog.text


def test_channels_are_independent():
    first, second = EventChannel(), EventChannel()
    seen = []
    first.on("total", seen.append)

    second.emit("total", 1)

    assert seen == []
