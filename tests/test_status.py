import asyncio

import pytest

from ringgate.status import StatusEvent, StatusRelay


async def _drain(relay: StatusRelay) -> list[StatusEvent]:
    return [event async for event in relay]


def test_event_wire_values():
    assert [str(e) for e in StatusEvent] == [
        "sending_invite",
        "authenticating",
        "trying",
        "hanging_up_timer",
        "error",
    ]


@pytest.mark.asyncio
async def test_events_delivered_in_order():
    relay = StatusRelay()
    relay.post(StatusEvent.SENDING_INVITE)
    relay.post(StatusEvent.TRYING)
    relay.post(StatusEvent.HANGING_UP_TIMER)
    relay.close()
    assert await _drain(relay) == [
        StatusEvent.SENDING_INVITE,
        StatusEvent.TRYING,
        StatusEvent.HANGING_UP_TIMER,
    ]


@pytest.mark.asyncio
async def test_full_buffer_drops_newest():
    relay = StatusRelay(capacity=2)
    assert relay.post(StatusEvent.SENDING_INVITE)
    assert relay.post(StatusEvent.AUTHENTICATING)
    assert not relay.post(StatusEvent.TRYING)
    assert relay.dropped == 1
    relay.close()
    # Closing a full buffer evicts the oldest event to fit the end marker
    assert await _drain(relay) == [StatusEvent.AUTHENTICATING]
    assert relay.dropped == 2


@pytest.mark.asyncio
async def test_post_after_close_is_ignored():
    relay = StatusRelay()
    relay.close()
    relay.close()
    assert relay.closed
    assert not relay.post(StatusEvent.ERROR)
    assert await _drain(relay) == []
    # Iterating again still ends immediately
    assert await _drain(relay) == []


@pytest.mark.asyncio
async def test_consumer_waits_for_events():
    relay = StatusRelay()
    consumer = asyncio.create_task(_drain(relay))
    await asyncio.sleep(0)
    relay.post(StatusEvent.SENDING_INVITE)
    await asyncio.sleep(0.01)
    relay.post(StatusEvent.ERROR)
    relay.close()
    assert await asyncio.wait_for(consumer, timeout=1.0) == [
        StatusEvent.SENDING_INVITE,
        StatusEvent.ERROR,
    ]
