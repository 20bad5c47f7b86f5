import asyncio

import pytest

from bot_core.turn_context import TurnContext
from core_logic.typing_timer import TypingTimer
from tests.conftest import FakeAdapter, make_activity


def typing_count(adapter):
    return len(adapter.sent_of_type("typing"))


@pytest.mark.asyncio
async def test_sends_typing_until_first_message():
    adapter = FakeAdapter()
    context = TurnContext(adapter, make_activity("hi"))
    timer = TypingTimer(delay=0.01)

    assert timer.start(context) is True
    await asyncio.sleep(0.05)
    assert typing_count(adapter) >= 2

    await context.send_activity("answer")
    sent_after_reply = typing_count(adapter)
    await asyncio.sleep(0.05)

    assert timer.running is False
    assert typing_count(adapter) == sent_after_reply
    assert adapter.texts == ["answer"]


@pytest.mark.asyncio
async def test_only_starts_for_messages():
    timer = TypingTimer(delay=0.01)
    context = TurnContext(FakeAdapter(), make_activity(type="event", name="ping"))

    assert timer.start(context) is False
    assert timer.running is False


@pytest.mark.asyncio
async def test_start_twice_is_refused():
    timer = TypingTimer(delay=0.01)
    context = TurnContext(FakeAdapter(), make_activity("hi"))

    assert timer.start(context) is True
    assert timer.start(context) is False
    timer.stop()
    timer.stop()
    assert timer.running is False


@pytest.mark.asyncio
async def test_send_failure_stops_timer():
    class BrokenAdapter(FakeAdapter):
        async def send_activities(self, context, activities):
            raise ConnectionError("offline")

    timer = TypingTimer(delay=0.01)
    timer.start(TurnContext(BrokenAdapter(), make_activity("hi")))
    await asyncio.sleep(0.03)

    assert timer.running is False
