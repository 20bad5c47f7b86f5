import asyncio

import pytest
from botbuilder.schema import DeliveryModes  # type: ignore

from bot_core.streaming_response import (
    Citation,
    StreamEndedError,
    StreamingResponse,
    format_citations_response,
    get_used_citations,
    snippet,
)
from bot_core.turn_context import TurnContext
from tests.conftest import FakeAdapter, make_activity


class FailingAdapter(FakeAdapter):
    """Raises ``error`` for every typing activity it is asked to send."""

    def __init__(self, error: Exception):
        super().__init__()
        self.error = error

    async def send_activities(self, context, activities):
        if any(str(getattr(a.type, "value", a.type)) == "typing" for a in activities):
            raise self.error
        return await super().send_activities(context, activities)


class TimedAdapter(FakeAdapter):
    """Records the event-loop time of every send."""

    def __init__(self):
        super().__init__()
        self.sent_at = []

    async def send_activities(self, context, activities):
        self.sent_at.append(asyncio.get_running_loop().time())
        return await super().send_activities(context, activities)


def new_stream(adapter=None, channel_id="msteams", **kwargs):
    adapter = adapter or FakeAdapter()
    context = TurnContext(adapter, make_activity("question", channel_id=channel_id, **kwargs))
    return StreamingResponse(context, interval=0), adapter


def stream_types(adapter):
    return [a.channel_data.get("streamType") for a in adapter.sent]


class TestStreamingChannel:
    def test_channel_intervals(self):
        teams = StreamingResponse(TurnContext(FakeAdapter(), make_activity("q", channel_id="msteams")))
        webchat = StreamingResponse(TurnContext(FakeAdapter(), make_activity("q", channel_id="webchat")))
        slack = StreamingResponse(TurnContext(FakeAdapter(), make_activity("q", channel_id="slack")))
        directline = StreamingResponse(TurnContext(FakeAdapter(), make_activity("q", channel_id="directline")))

        assert teams.interval == 1.0
        assert webchat.interval == 0.5
        assert teams.is_streaming_channel and webchat.is_streaming_channel
        assert not slack.is_streaming_channel
        assert directline.is_streaming_channel and directline.interval == 0.5

    @pytest.mark.asyncio
    async def test_informative_update_then_chunks_then_final(self):
        response, adapter = new_stream()

        response.queue_informative_update("Searching...")
        await response.wait_for_queue()
        response.queue_text_chunk("Hello")
        await response.wait_for_queue()
        response.queue_text_chunk(" world")
        await response.end_stream()

        assert stream_types(adapter) == ["informative", "streaming", "final"]
        assert [a.channel_data["streamSequence"] for a in adapter.sent] == [1, 2, 3]
        final = adapter.sent[-1]
        assert str(getattr(final.type, "value", final.type)) == "message"
        assert final.text == "Hello world"
        assert response.stream_id == "activity-1"
        assert final.channel_data["streamId"] == "activity-1"
        assert final.entities[0].stream_type == "final"
        assert final.serialize()["entities"][0]["streamType"] == "final"
        assert response.updates_sent == 3

    @pytest.mark.asyncio
    async def test_interval_separates_sends_across_idle_periods(self):
        adapter = TimedAdapter()
        context = TurnContext(adapter, make_activity("question", channel_id="webchat"))
        response = StreamingResponse(context, interval=0.2)

        response.queue_text_chunk("Hello")
        await response.wait_for_queue()
        response.queue_text_chunk(" world")
        await response.wait_for_queue()
        await response.end_stream()

        gaps = [later - earlier for earlier, later in zip(adapter.sent_at, adapter.sent_at[1:])]
        assert len(gaps) == 2
        assert all(gap >= 0.19 for gap in gaps)

    @pytest.mark.asyncio
    async def test_chunks_queued_together_are_coalesced(self):
        response, adapter = new_stream()

        response.queue_text_chunk("a")
        response.queue_text_chunk("b")
        response.queue_text_chunk("c")
        await response.wait_for_queue()
        await response.end_stream()

        assert stream_types(adapter) == ["streaming", "final"]
        assert adapter.sent[0].text == "abc"
        assert response.get_message() == "abc"

    @pytest.mark.asyncio
    async def test_empty_stream_sends_fallback_text(self):
        response, adapter = new_stream()

        await response.end_stream()

        assert adapter.texts == ["end stream response"]

    @pytest.mark.asyncio
    async def test_use_after_end_raises(self):
        response, _ = new_stream()
        await response.end_stream()

        with pytest.raises(StreamEndedError, match="already ended"):
            response.queue_text_chunk("late")
        with pytest.raises(StreamEndedError):
            response.queue_informative_update("late")
        with pytest.raises(StreamEndedError):
            await response.end_stream()


class TestNonStreamingChannel:
    @pytest.mark.asyncio
    async def test_single_final_message(self):
        response, adapter = new_stream(channel_id="slack")

        response.queue_informative_update("ignored")
        response.queue_text_chunk("one ")
        response.queue_text_chunk("two")
        await response.end_stream()

        assert len(adapter.sent) == 1
        assert adapter.sent[0].text == "one two"
        assert "streamType" not in adapter.sent[0].channel_data

    @pytest.mark.asyncio
    async def test_expect_replies_disables_streaming(self):
        response, adapter = new_stream(delivery_mode=DeliveryModes.expect_replies)

        response.queue_text_chunk("buffered")
        await response.end_stream()

        assert not response.is_streaming_channel
        assert [a.text for a in response._context.buffered_reply_activities] == ["buffered"]


class TestSendErrors:
    @pytest.mark.asyncio
    async def test_cancellation_stops_the_stream(self):
        response, adapter = new_stream(FailingAdapter(Exception("ContentStreamNotAllowed")))

        response.queue_text_chunk("partial")
        await response.wait_for_queue()
        await response.end_stream()

        assert response.canceled is True
        assert adapter.sent == []

    @pytest.mark.asyncio
    async def test_unsupported_channel_falls_back_to_final_message(self):
        response, adapter = new_stream(FailingAdapter(Exception("BadArgument: streaming api is not enabled")))

        response.queue_text_chunk("partial")
        await response.wait_for_queue()
        response.queue_text_chunk(" answer")
        await response.end_stream()

        assert not response.is_streaming_channel
        assert adapter.texts == ["partial answer"]

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self):
        response, _ = new_stream(FailingAdapter(RuntimeError("network down")))

        response.queue_text_chunk("partial")
        with pytest.raises(RuntimeError, match="network down"):
            await response.wait_for_queue()


class TestFinalMessageOptions:
    @pytest.mark.asyncio
    async def test_citations_and_ai_label(self):
        response, adapter = new_stream(channel_id="slack")
        response.set_generated_by_ai_label(True)

        response.queue_text_chunk("See [doc1].", citations=[Citation(content="Source text", title="Handbook")])
        await response.end_stream()

        final = adapter.sent[0]
        assert final.text == "See [1]."
        entity = final.entities[0]
        assert entity.additional_type == ["AIGeneratedContent"]
        assert entity.citation[0]["appearance"]["name"] == "Handbook"
        assert response.citations[0]["position"] == 1

    @pytest.mark.asyncio
    async def test_feedback_loop(self):
        response, adapter = new_stream(channel_id="slack")
        response.set_feedback_loop(True)
        response.set_feedback_loop_type("custom")
        response.set_attachments([])

        response.queue_text_chunk("rate me")
        await response.end_stream()

        assert adapter.sent[0].channel_data["feedbackLoop"] == {"type": "custom"}

    def test_feedback_loop_type_is_validated(self):
        response, _ = new_stream()
        with pytest.raises(ValueError):
            response.set_feedback_loop_type("thumbs")


class TestCitationHelpers:
    def test_format_citations(self):
        assert format_citations_response("a [doc2] b [DOC10]") == "a [2] b [10]"

    def test_snippet_cuts_on_word_boundary(self):
        text = "word " * 200
        result = snippet(text)
        assert len(result) <= 480
        assert result.endswith("...")
        assert snippet("short") == "short"

    def test_used_citations(self):
        citations = [{"position": 1}, {"position": 2}]
        assert get_used_citations("only [2]", citations) == [{"position": 2}]
        assert get_used_citations("none", citations) is None
