from chatsync.core.streams import EventStream, StateStream


async def test_state_stream_replays_latest_and_conflates():
    stream = StateStream(0)
    updates = stream.subscribe()

    assert await updates.__anext__() == 0
    assert stream.subscriber_count == 1

    stream.set(1)
    stream.set(2)
    assert await updates.__anext__() == 2

    await updates.aclose()
    assert stream.subscriber_count == 0


async def test_state_stream_skips_equal_values():
    stream = StateStream([1])
    updates = stream.subscribe()
    await updates.__anext__()

    stream.set([1])
    stream.set([1, 2])

    assert await updates.__anext__() == [1, 2]
    await updates.aclose()


async def test_event_stream_subscription_is_eager():
    events = EventStream()
    first = events.subscribe()
    second = events.subscribe()

    events.publish("a")
    events.publish("b")

    assert [await first.get(), await first.get()] == ["a", "b"]
    assert second.pending() == 2


async def test_closed_subscription_stops_receiving():
    events = EventStream()
    sub = events.subscribe()
    sub.close()

    events.publish("a")

    assert sub.pending() == 0
