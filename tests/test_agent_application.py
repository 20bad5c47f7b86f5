"""
End-to-end turns through AgentApplication with a recording adapter.
"""
import re
from unittest.mock import AsyncMock, Mock

import pytest
from botbuilder.schema import ChannelAccount, Entity, Mention, MessageReaction  # type: ignore

from bot_core.storage import MemoryStorage
from bot_core.turn_context import TurnContext
from core_logic.agent_application import (
    AFTER_TURN,
    BEFORE_TURN,
    TURN_STATE_KEY,
    AgentApplication,
    AgentApplicationOptions,
    ApplicationConfigurationError,
)
from core_logic.constants import INVOKE_RESPONSE_KEY
from core_logic.extensions import AgentExtension
from core_logic.route_list import RouteRank
from user_auth.auth_provider import AuthConfigurationError
from tests.conftest import FakeAdapter, FakeUserTokenClient, make_activity, make_invoke


def make_app(adapter=None, storage=None, **kwargs) -> AgentApplication:
    return AgentApplication(
        AgentApplicationOptions(adapter=adapter or FakeAdapter(), storage=storage or MemoryStorage(), **kwargs)
    )


async def run(app, activity, adapter=None):
    context = TurnContext(adapter or app.adapter, activity)
    handled = await app.run(context)
    return handled, context


class TestConfiguration:
    def test_authorization_requires_storage(self):
        with pytest.raises(ApplicationConfigurationError):
            AgentApplication(AgentApplicationOptions(adapter=FakeAdapter(), authorization={"GRAPH": {"name": "g"}}))

    def test_long_running_requires_adapter(self):
        with pytest.raises(ApplicationConfigurationError):
            AgentApplication(AgentApplicationOptions(storage=MemoryStorage(), long_running_messages=True))

    def test_defaults_to_memory_storage(self):
        app = AgentApplication()
        assert isinstance(app.storage, MemoryStorage)
        with pytest.raises(ApplicationConfigurationError):
            _ = app.adapter
        with pytest.raises(ApplicationConfigurationError):
            _ = app.authorization

    def test_keyword_options(self):
        app = AgentApplication(storage=MemoryStorage(), agent_app_id="agent-app")
        assert app.options.agent_app_id == "agent-app"

    def test_auth_handlers_must_exist(self):
        adapter = FakeAdapter(user_token_client=FakeUserTokenClient())
        app = make_app(adapter, authorization={"GRAPH": {"name": "graph-connection"}})

        async def handler(context, state):
            return None

        with pytest.raises(AuthConfigurationError):
            app.on_message("/github", handler, auth_handlers=["GITHUB"])


class TestRouting:
    @pytest.mark.asyncio
    async def test_first_rank_message_route_beats_activity_route(self):
        app = make_app()
        h1, h2 = AsyncMock(), AsyncMock()
        app.on_message("hello", h1, rank=RouteRank.FIRST)
        app.on_activity("message", h2)

        handled, _ = await run(app, make_activity("hello"))

        assert handled is True
        h1.assert_awaited_once()
        h2.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_keyword_matching_is_case_insensitive_and_regex_aware(self):
        app = make_app()
        keyword, pattern = AsyncMock(), AsyncMock()
        app.on_message("reset", keyword)
        app.on_message(re.compile(r"^order \d+$"), pattern)

        await run(app, make_activity("RESET"))
        await run(app, make_activity("order 42"))

        keyword.assert_awaited_once()
        pattern.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unhandled_activity_returns_false(self):
        app = make_app()
        app.on_message("hello", AsyncMock())

        handled, _ = await run(app, make_activity("goodbye"))

        assert handled is False

    @pytest.mark.asyncio
    async def test_invoke_route_wins_over_catch_all(self):
        app = make_app()
        catch_all, invoke = AsyncMock(), AsyncMock()
        app.on_activity(re.compile(".*"), catch_all, rank=RouteRank.FIRST)
        app.on_invoke("custom/action", invoke, rank=RouteRank.LAST)

        await run(app, make_invoke("custom/action", {"x": 1}))

        invoke.assert_awaited_once()
        catch_all.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_conversation_update_members_added(self):
        app = make_app()
        welcome = AsyncMock()
        app.on_conversation_update("membersAdded", welcome)

        activity = make_activity(type="conversationUpdate", members_added=[ChannelAccount(id="user-2")])
        handled, _ = await run(app, activity)

        assert handled is True
        welcome.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_message_reactions(self):
        app = make_app()
        added, removed = AsyncMock(), AsyncMock()
        app.on_message_reaction_added(added)
        app.on_message_reaction_removed(removed)

        await run(app, make_activity(type="messageReaction", reactions_added=[MessageReaction(type="like")]))

        added.assert_awaited_once()
        removed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_recipient_mention_is_removed(self):
        app = make_app()
        seen = []

        async def handler(context, state):
            seen.append(context.activity.text)

        app.on_message("hello", handler)
        mention = Mention(
            mentioned=ChannelAccount(id="agent-1", name="Agent"),
            text="<at>Agent</at>",
            type="mention",
        )
        activity = make_activity(
            "<at>Agent</at> hello",
            entities=[Entity().deserialize(mention.serialize())],
        )

        await run(app, activity)

        assert seen == ["hello"]


class TestTurnLifecycle:
    @pytest.mark.asyncio
    async def test_state_is_persisted_between_turns(self):
        storage = MemoryStorage()
        app = make_app(storage=storage)

        async def count(context, state):
            value = (state.get_value("conversation.count") or 0) + 1
            state.set_value("conversation.count", value)
            await context.send_activity(f"count {value}")

        app.on_activity("message", count)
        adapter = app.adapter

        await run(app, make_activity("one"))
        await run(app, make_activity("two"))

        assert adapter.texts == ["count 1", "count 2"]

    @pytest.mark.asyncio
    async def test_before_turn_false_skips_routing_but_saves_state(self):
        storage = MemoryStorage()
        app = make_app(storage=storage)
        handler = AsyncMock()
        app.on_activity("message", handler)

        async def before(context, state):
            state.set_value("conversation.seen", True)
            return False

        app.on_turn(BEFORE_TURN, before)

        handled, _ = await run(app, make_activity("hi"))

        assert handled is False
        handler.assert_not_awaited()
        stored = await storage.read(["msteams/agent-1/conversations/conversation-1"])
        assert stored["msteams/agent-1/conversations/conversation-1"]["seen"] is True

    @pytest.mark.asyncio
    async def test_after_turn_false_skips_save(self):
        storage = MemoryStorage()
        app = make_app(storage=storage)

        async def handler(context, state):
            state.set_value("conversation.touched", True)

        app.on_activity("message", handler)
        app.on_turn(AFTER_TURN, lambda context, state: False)

        await run(app, make_activity("hi"))

        assert await storage.read(["msteams/agent-1/conversations/conversation-1"]) == {}

    @pytest.mark.asyncio
    async def test_turn_state_is_exposed_on_context(self):
        app = make_app()
        states = []

        async def handler(context, state):
            states.append((state, context.turn_state[TURN_STATE_KEY]))

        app.on_activity("message", handler)
        await run(app, make_activity("hi"))

        assert states[0][0] is states[0][1]

    @pytest.mark.asyncio
    async def test_on_error_sets_adapter_handler(self):
        adapter = FakeAdapter()
        app = make_app(adapter)
        on_error = AsyncMock()

        app.on_error(on_error)

        assert adapter.on_turn_error is on_error

    @pytest.mark.asyncio
    async def test_typing_timer_stops_on_first_message(self):
        adapter = FakeAdapter()
        app = make_app(adapter, start_typing_timer=True)

        async def handler(context, state):
            await context.send_activity("done")

        app.on_activity("message", handler)
        await run(app, make_activity("hi"))

        kinds = [str(getattr(a.type, "value", a.type)) for a in adapter.sent]
        assert kinds[-1] == "message"
        assert set(kinds) <= {"typing", "message"}

    @pytest.mark.asyncio
    async def test_long_running_message_runs_in_proactive_turn(self):
        adapter = FakeAdapter()
        adapter.continue_conversation = AsyncMock(wraps=adapter.continue_conversation)
        app = make_app(adapter, long_running_messages=True, agent_app_id="agent-app")
        seen = []

        async def handler(context, state):
            seen.append(context.activity.text)
            await context.send_activity("later")

        app.on_activity("message", handler)
        handled, _ = await run(app, make_activity("work"))

        assert handled is True
        assert seen == ["work"]
        adapter.continue_conversation.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_send_proactive_activity(self):
        adapter = FakeAdapter()
        app = make_app(adapter, agent_app_id="agent-app")
        reference = TurnContext.get_conversation_reference(make_activity("hi"))

        response = await app.send_proactive_activity(reference, "reminder")

        assert response.id == "activity-1"
        assert adapter.texts == ["reminder"]
        assert adapter.sent[0].recipient.id == "user-1"


class TestSignInScenario:
    def make_signed_app(self, token_client, storage=None):
        adapter = FakeAdapter(user_token_client=token_client)
        app = make_app(
            adapter,
            storage=storage or MemoryStorage(),
            authorization={"GRAPH": {"name": "graph-connection"}},
        )

        async def show_token(context, state):
            token = await app.authorization.get_token(context, "GRAPH")
            await context.send_activity(f"token: {token.token}")

        async def sign_out(context, state):
            await app.authorization.sign_out(context)
            await context.send_activity("signed out")

        app.on_message("/graph", show_token, auth_handlers=["GRAPH"])
        app.on_message("/signout", sign_out, bypass_guards=True)
        return app, adapter

    @pytest.mark.asyncio
    async def test_handler_runs_after_magic_code(self):
        token_client = FakeUserTokenClient(tokens={"123456": "user-token"})
        app, adapter = self.make_signed_app(token_client)
        on_success = Mock()
        app.on_sign_in_success(on_success)

        handled, _ = await run(app, make_activity("/graph"))
        assert handled is True
        assert adapter.sent[0].attachments[0].content.connection_name == "graph-connection"
        assert adapter.texts == [None]

        _, context = await run(app, make_invoke("signin/verifyState", {"state": "123456"}))

        assert adapter.texts[-1] == "token: user-token"
        assert context.turn_state[INVOKE_RESPONSE_KEY].value.status == 200
        on_success.assert_called_once()
        assert on_success.call_args.args[2] == "GRAPH"

    @pytest.mark.asyncio
    async def test_handler_runs_after_wrong_then_right_code(self):
        token_client = FakeUserTokenClient(tokens={"123456": "user-token"})
        app, adapter = self.make_signed_app(token_client)

        await run(app, make_activity("/graph"))
        await run(app, make_activity("999999"))

        cards = [a for a in adapter.sent if a.attachments]
        assert len(cards) == 2
        assert "Invalid **999999** code" in adapter.texts[-2]
        assert not any(text and text.startswith("token:") for text in adapter.texts)

        await run(app, make_activity("123456"))

        assert adapter.texts[-1] == "token: user-token"

    @pytest.mark.asyncio
    async def test_signed_in_user_goes_straight_through(self):
        app, adapter = self.make_signed_app(FakeUserTokenClient(tokens={"": "existing-token"}))

        await run(app, make_activity("/graph"))

        assert adapter.texts == ["token: existing-token"]

    @pytest.mark.asyncio
    async def test_bypass_route_runs_while_sign_in_pending(self):
        token_client = FakeUserTokenClient()
        app, adapter = self.make_signed_app(token_client)
        await run(app, make_activity("/graph"))

        await run(app, make_activity("/signout"))

        assert adapter.texts[-1] == "signed out"
        assert token_client.signed_out == [("user-1", "graph-connection", "msteams")]

    @pytest.mark.asyncio
    async def test_failure_callback_receives_reason(self):
        app, adapter = self.make_signed_app(FakeUserTokenClient())
        failures = []

        async def on_failure(context, state, handler_id, reason):
            failures.append((handler_id, reason))

        app.on_sign_in_failure(on_failure)
        await run(app, make_activity("/graph"))
        for code in ("a", "b", "c"):
            await run(app, make_activity(code))

        assert failures == [("GRAPH", "max_attempts")]
        assert not any(text and text.startswith("token:") for text in adapter.texts)


class TestExtensions:
    @pytest.mark.asyncio
    async def test_extension_routes_only_match_their_channel(self):
        app = make_app()
        teams_handler = AsyncMock()
        extension = AgentExtension("msteams")

        app.register_extension(
            extension, lambda ext: ext.add_route(app, lambda context: True, teams_handler, rank=RouteRank.FIRST)
        )

        await run(app, make_activity("hi", channel_id="webchat"))
        teams_handler.assert_not_awaited()
        await run(app, make_activity("hi", channel_id="msteams"))
        teams_handler.assert_awaited_once()

    def test_extension_registered_once(self):
        app = make_app()
        extension = AgentExtension("msteams")
        app.register_extension(extension, lambda ext: None)

        with pytest.raises(ValueError, match="Extension already registered"):
            app.register_extension(extension, lambda ext: None)
