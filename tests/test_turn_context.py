import pytest
from botbuilder.core import InvokeResponse
from botbuilder.schema import Activity, ActivityTypes, DeliveryModes  # type: ignore

from bot_core.turn_context import TurnContext, TurnStateBag
from core_logic.constants import INVOKE_RESPONSE_ACTIVITY_TYPE, INVOKE_RESPONSE_KEY
from tests.conftest import FakeAdapter, make_activity


class TestTurnStateBag:
    def test_push_and_restore(self):
        bag = TurnStateBag()
        bag["key"] = "original"
        bag.push("key", "override")
        assert bag["key"] == "override"
        assert bag.restore("key") == "override"
        assert bag["key"] == "original"

    def test_restore_removes_key_pushed_onto_empty_bag(self):
        bag = TurnStateBag()
        bag.push("key", 1)
        bag.restore("key")
        assert "key" not in bag


class TestTurnContext:
    def test_requires_adapter_and_activity(self):
        with pytest.raises(TypeError):
            TurnContext(None, make_activity("hi"))
        with pytest.raises(TypeError):
            TurnContext(FakeAdapter(), None)

    def test_responded_cannot_be_reset(self):
        context = TurnContext(FakeAdapter(), make_activity("hi"))
        with pytest.raises(ValueError):
            context.responded = False

    def test_copy_shares_turn_state(self):
        context = TurnContext(FakeAdapter(), make_activity("hi"))
        context.turn_state["value"] = 42
        copied = TurnContext(context)
        assert copied.turn_state["value"] == 42
        assert copied.activity is context.activity

    @pytest.mark.asyncio
    async def test_send_activity_addresses_reply(self):
        adapter = FakeAdapter()
        context = TurnContext(adapter, make_activity("hi"))

        response = await context.send_activity("hello back")

        assert response.id == "activity-1"
        sent = adapter.sent[0]
        assert sent.text == "hello back"
        assert sent.recipient.id == "user-1"
        assert sent.from_property.id == "agent-1"
        assert sent.reply_to_id == "incoming-1"
        assert sent.conversation.id == "conversation-1"
        assert context.responded is True

    @pytest.mark.asyncio
    async def test_trace_does_not_mark_responded(self):
        adapter = FakeAdapter()
        context = TurnContext(adapter, make_activity("hi"))

        await context.send_trace_activity("debug", value={"a": 1})

        assert len(adapter.sent) == 1
        assert context.responded is False

    @pytest.mark.asyncio
    async def test_interceptors_run_in_order_and_can_modify(self):
        adapter = FakeAdapter()
        context = TurnContext(adapter, make_activity("hi"))
        order = []

        async def first(ctx, activities, next_send):
            order.append("first")
            activities[0].text = activities[0].text.upper()
            return await next_send()

        async def second(ctx, activities, next_send):
            order.append("second")
            return await next_send()

        context.on_send_activities(first).on_send_activities(second)
        await context.send_activity("shout")

        assert order == ["first", "second"]
        assert adapter.sent[0].text == "SHOUT"

    @pytest.mark.asyncio
    async def test_interceptor_skipping_next_suppresses_send(self):
        adapter = FakeAdapter()
        context = TurnContext(adapter, make_activity("hi"))

        async def swallow(ctx, activities, next_send):
            return []

        context.on_send_activities(swallow)
        response = await context.send_activity("never sent")

        assert response is None
        assert adapter.sent == []
        assert context.responded is False

    @pytest.mark.asyncio
    async def test_expect_replies_buffers_activities(self):
        adapter = FakeAdapter()
        context = TurnContext(adapter, make_activity("hi", delivery_mode=DeliveryModes.expect_replies))

        await context.send_activity("one")
        await context.send_activity("two")

        assert adapter.sent == []
        assert [a.text for a in context.buffered_reply_activities] == ["one", "two"]
        assert context.responded is True

    @pytest.mark.asyncio
    async def test_invoke_response_is_parked_in_turn_state(self):
        adapter = FakeAdapter()
        context = TurnContext(adapter, make_activity(type="invoke", name="custom/action"))

        await context.send_activity(
            Activity(type=INVOKE_RESPONSE_ACTIVITY_TYPE, value=InvokeResponse(status=200, body={"ok": True}))
        )

        assert context.turn_state[INVOKE_RESPONSE_KEY].value.status == 200
        assert context.responded is False

    @pytest.mark.asyncio
    async def test_update_and_delete_go_through_interceptors(self):
        adapter = FakeAdapter()
        context = TurnContext(adapter, make_activity("hi"))
        seen = []

        async def on_update(ctx, activity, next_update):
            seen.append(("update", activity.id))
            return await next_update()

        async def on_delete(ctx, reference, next_delete):
            seen.append(("delete", reference.activity_id))
            return await next_delete()

        context.on_update_activity(on_update).on_delete_activity(on_delete)
        await context.update_activity(Activity(id="activity-9", type=ActivityTypes.message, text="edited"))
        await context.delete_activity("activity-9")

        assert seen == [("update", "activity-9"), ("delete", "activity-9")]
        assert adapter.updated[0].text == "edited"
        assert adapter.deleted[0].activity_id == "activity-9"

    def test_conversation_reference_round_trip(self):
        incoming = make_activity("hi")
        reference = TurnContext.get_conversation_reference(incoming)

        outgoing = TurnContext.apply_conversation_reference(Activity(type=ActivityTypes.message), reference)
        assert outgoing.recipient.id == "user-1"
        assert outgoing.reply_to_id == "incoming-1"

        resumed = TurnContext.apply_conversation_reference(
            Activity(type=ActivityTypes.event), reference, is_incoming=True
        )
        assert resumed.from_property.id == "user-1"
        assert resumed.id == "incoming-1"
