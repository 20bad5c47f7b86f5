# core_logic/agent_application.py
"""
The agent application: route registration plus the per-turn run loop.

A turn loads state, runs before-turn hooks, resolves the route (resuming a
pending sign-in when there is one), lets the route's guards decide whether the
handler may run, runs after-turn hooks and saves state.
"""
import inspect
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from botbuilder.core import TurnContext as BotFrameworkTurnContext
from botbuilder.schema import Activity, ActivityTypes, ConversationReference, ResourceResponse  # type: ignore
from pydantic import BaseModel, ConfigDict, Field

from bot_core.storage import MemoryStorage
from bot_core.turn_context import TurnContext, activity_type
from core_logic.extensions import AgentExtension
from core_logic.route_list import RouteHandler, RouteList, RouteRank, RouteSelector
from core_logic.route_manager import RouteManager
from core_logic.turn_state import TurnState
from core_logic.typing_timer import TypingTimer
from user_auth.authorization import Authorization

log = logging.getLogger(__name__)

TURN_STATE_KEY = "turnState"
"""Turn-state key holding the TurnState of the running turn."""

BEFORE_TURN = "beforeTurn"
AFTER_TURN = "afterTurn"

TurnEventHandler = Callable[[TurnContext, TurnState], Awaitable[bool]]
Matcher = Union[str, re.Pattern, RouteSelector]


class ApplicationConfigurationError(Exception):
    """Raised when the application is used without a required collaborator."""
    pass


class AgentApplicationOptions(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    adapter: Any = Field(None, description="CloudAdapter used for proactive calls and long-running messages.")
    storage: Any = Field(None, description="Storage for turn state and pending sign-ins.")
    authorization: Optional[Dict[str, Any]] = Field(None, description="Auth handler settings keyed by handler id.")
    agent_app_id: Optional[str] = None
    start_typing_timer: bool = False
    long_running_messages: bool = False
    remove_recipient_mention: bool = True
    turn_state_factory: Callable[[], TurnState] = TurnState


async def _maybe_await(result):
    if inspect.isawaitable(result):
        return await result
    return result


def _type_selector(type_matcher: Matcher) -> RouteSelector:
    if callable(type_matcher):
        return type_matcher
    if isinstance(type_matcher, re.Pattern):
        return lambda context: bool(activity_type(context.activity)) and type_matcher.search(activity_type(context.activity)) is not None
    type_name = str(type_matcher).lower()
    return lambda context: (activity_type(context.activity) or "").lower() == type_name


def _message_selector(keyword: Matcher) -> RouteSelector:
    if callable(keyword):
        return keyword

    def selector(context: TurnContext) -> bool:
        activity = context.activity
        if activity_type(activity) != ActivityTypes.message.value or not activity.text:
            return False
        if isinstance(keyword, re.Pattern):
            return keyword.search(activity.text) is not None
        return activity.text.lower() == str(keyword).lower()

    return selector


def _conversation_update_selector(event: str) -> RouteSelector:
    def selector(context: TurnContext) -> bool:
        activity = context.activity
        if activity_type(activity) != ActivityTypes.conversation_update.value:
            return False
        if event == "membersAdded":
            return bool(activity.members_added)
        if event == "membersRemoved":
            return bool(activity.members_removed)
        channel_data = activity.channel_data
        if isinstance(channel_data, dict):
            return channel_data.get("eventType") == event
        return getattr(channel_data, "event_type", None) == event

    return selector


class AgentApplication:
    """
    Hosts the routes of one agent.

    The route table is owned by the instance; nothing is registered globally.
    """

    def __init__(self, options: Optional[AgentApplicationOptions] = None, **kwargs):
        self._options = options or AgentApplicationOptions(**kwargs)
        self._routes = RouteList()
        self._before_turn: List[TurnEventHandler] = []
        self._after_turn: List[TurnEventHandler] = []
        self._extensions: List[AgentExtension] = []
        self._adapter = self._options.adapter

        if self._options.authorization and self._options.storage is None:
            raise ApplicationConfigurationError(
                "The application must be configured with 'storage' to use user authorization."
            )
        if self._options.long_running_messages and self._adapter is None:
            raise ApplicationConfigurationError(
                "The application must be configured with an 'adapter' to use long running messages."
            )

        self._storage = self._options.storage
        if self._storage is None:
            log.warning("No storage configured; turn state will be kept in memory only.")
            self._storage = MemoryStorage()

        self._authorization: Optional[Authorization] = None
        if self._options.authorization:
            if self._adapter is None:
                raise ApplicationConfigurationError(
                    "The application must be configured with an 'adapter' to use user authorization."
                )
            self._authorization = Authorization(
                self._storage,
                self._options.authorization,
                getattr(self._adapter, "user_token_client", None),
                auth_provider=getattr(self._adapter, "auth_provider", None),
                auth_config=getattr(self._adapter, "auth_config", None),
            )

    # --- Properties ---

    @property
    def options(self) -> AgentApplicationOptions:
        return self._options

    @property
    def adapter(self):
        if self._adapter is None:
            raise ApplicationConfigurationError("The application was not configured with an 'adapter'.")
        return self._adapter

    @property
    def authorization(self) -> Authorization:
        if self._authorization is None:
            raise ApplicationConfigurationError("The application was not configured with 'authorization' handlers.")
        return self._authorization

    @property
    def routes(self) -> RouteList:
        return self._routes

    @property
    def storage(self):
        return self._storage

    # --- Registration ---

    def add_route(
        self,
        selector: RouteSelector,
        handler: RouteHandler,
        is_invoke_route: bool = False,
        rank: float = RouteRank.UNSPECIFIED,
        auth_handlers=(),
        bypass_guards: bool = False,
    ) -> "AgentApplication":
        auth_handlers = list(auth_handlers or [])
        guards = self.authorization.guards(auth_handlers) if auth_handlers else []
        self._routes.add_route(
            selector,
            handler,
            is_invoke_route=is_invoke_route,
            rank=rank,
            auth_handlers=auth_handlers,
            guards=guards,
            bypass_guards=bypass_guards,
        )
        return self

    def on_activity(self, type_matcher, handler: RouteHandler, auth_handlers=(), rank: float = RouteRank.UNSPECIFIED):
        for matcher in type_matcher if isinstance(type_matcher, (list, tuple)) else [type_matcher]:
            self.add_route(_type_selector(matcher), handler, rank=rank, auth_handlers=auth_handlers)
        return self

    def on_message(
        self,
        keyword,
        handler: RouteHandler,
        auth_handlers=(),
        rank: float = RouteRank.UNSPECIFIED,
        bypass_guards: bool = False,
    ):
        for matcher in keyword if isinstance(keyword, (list, tuple)) else [keyword]:
            self.add_route(
                _message_selector(matcher),
                handler,
                rank=rank,
                auth_handlers=auth_handlers,
                bypass_guards=bypass_guards,
            )
        return self

    def on_conversation_update(self, event: str, handler: RouteHandler, auth_handlers=(), rank: float = RouteRank.UNSPECIFIED):
        if not callable(handler):
            raise TypeError(f"ConversationUpdate 'handler' for {event} must be callable.")
        return self.add_route(_conversation_update_selector(event), handler, rank=rank, auth_handlers=auth_handlers)

    def on_message_reaction_added(self, handler: RouteHandler, rank: float = RouteRank.UNSPECIFIED):
        def selector(context: TurnContext) -> bool:
            activity = context.activity
            return activity_type(activity) == ActivityTypes.message_reaction.value and bool(activity.reactions_added)

        return self.add_route(selector, handler, rank=rank)

    def on_message_reaction_removed(self, handler: RouteHandler, rank: float = RouteRank.UNSPECIFIED):
        def selector(context: TurnContext) -> bool:
            activity = context.activity
            return activity_type(activity) == ActivityTypes.message_reaction.value and bool(activity.reactions_removed)

        return self.add_route(selector, handler, rank=rank)

    def on_invoke(self, name: str, handler: RouteHandler, auth_handlers=(), rank: float = RouteRank.UNSPECIFIED):
        def selector(context: TurnContext) -> bool:
            activity = context.activity
            return activity_type(activity) == ActivityTypes.invoke.value and activity.name == name

        return self.add_route(selector, handler, is_invoke_route=True, rank=rank, auth_handlers=auth_handlers)

    def on_turn(self, event, handler: TurnEventHandler) -> "AgentApplication":
        for name in event if isinstance(event, (list, tuple)) else [event]:
            if name == AFTER_TURN:
                self._after_turn.append(handler)
            else:
                self._before_turn.append(handler)
        return self

    def on_error(self, handler: Callable[[TurnContext, Exception], Awaitable[None]]) -> "AgentApplication":
        self.adapter.on_turn_error = handler
        return self

    def on_sign_in_success(self, handler, handler_id: str = None) -> "AgentApplication":
        """``handler(context, state, handler_id)`` runs after a guard obtains a token."""
        for guard in self._guard_targets(handler_id):
            async def on_success(context, _data, guard_id=guard.id):
                await _maybe_await(handler(context, context.turn_state.get(TURN_STATE_KEY), guard_id))

            guard.on_success(on_success)
        return self

    def on_sign_in_failure(self, handler, handler_id: str = None) -> "AgentApplication":
        """``handler(context, state, handler_id, reason)`` runs when a sign-in fails."""
        for guard in self._guard_targets(handler_id):
            async def on_failure(context, reason, guard_id=guard.id):
                await _maybe_await(handler(context, context.turn_state.get(TURN_STATE_KEY), guard_id, reason))

            guard.on_failure(on_failure)
        return self

    def register_extension(self, extension: AgentExtension, callback: Callable[[AgentExtension], None]) -> None:
        if any(existing is extension for existing in self._extensions):
            raise ValueError("Extension already registered")
        self._extensions.append(extension)
        callback(extension)

    def _guard_targets(self, handler_id: Optional[str]):
        if handler_id:
            return [self.authorization.guard(handler_id)]
        return list(self.authorization)

    # --- Running ---

    async def run(self, context: TurnContext) -> bool:
        """Process one turn. Returns True when a route handled the activity."""
        log.info(f"Running application with activity '{context.activity.id}'")
        if activity_type(context.activity) == ActivityTypes.message.value and self._options.long_running_messages:
            return await self._start_long_running_call(context)
        return await self._run_internal(context)

    async def _start_long_running_call(self, context: TurnContext) -> bool:
        result = {}

        async def logic(proactive_context: TurnContext):
            for key, value in vars(context.activity).items():
                setattr(proactive_context.activity, key, value)
            result["handled"] = await self._run_internal(proactive_context)

        await self.continue_conversation(context, logic)
        return result.get("handled", False)

    async def _run_internal(self, context: TurnContext) -> bool:
        typing_timer = TypingTimer() if self._options.start_typing_timer else None
        try:
            if typing_timer is not None:
                typing_timer.start(context)

            if self._options.remove_recipient_mention and activity_type(context.activity) == ActivityTypes.message.value:
                self._remove_recipient_mention(context.activity)

            state = self._options.turn_state_factory()
            await state.load(context, self._storage)
            context.turn_state[TURN_STATE_KEY] = state

            if not await self._call_event_handlers(context, state, self._before_turn):
                await state.save(context)
                return False

            manager = await RouteManager.initialize(self._routes, context, self._storage)
            route = manager.route
            if route is not None:
                if route.bypass_guards or not await manager.guarded():
                    await route.handler(context, state)
                else:
                    log.debug("Route handler skipped while sign-in is incomplete")

            if await self._call_event_handlers(context, state, self._after_turn):
                await state.save(context)

            return route is not None
        finally:
            if typing_timer is not None:
                typing_timer.stop()

    async def _call_event_handlers(self, context: TurnContext, state: TurnState, handlers: List[TurnEventHandler]) -> bool:
        for handler in handlers:
            if not await _maybe_await(handler(context, state)):
                return False
        return True

    @staticmethod
    def _remove_recipient_mention(activity: Activity) -> None:
        if not activity.entities or not activity.recipient or not activity.text:
            return
        BotFrameworkTurnContext.remove_recipient_mention(activity)
        activity.text = activity.text.strip()

    # --- Proactive ---

    async def continue_conversation(
        self,
        reference_or_context: Union[ConversationReference, TurnContext],
        logic: Callable[[TurnContext], Awaitable],
    ) -> None:
        adapter = self.adapter
        if not self._options.agent_app_id:
            log.warning(
                "Calling continue_conversation() without a configured 'agent_app_id'. "
                "In production environments an agent app id is required."
            )

        if isinstance(reference_or_context, TurnContext):
            reference = TurnContext.get_conversation_reference(reference_or_context.activity)
        else:
            reference = reference_or_context
        await adapter.continue_conversation(reference, logic)

    async def send_proactive_activity(
        self,
        reference_or_context: Union[ConversationReference, TurnContext],
        activity_or_text: Union[Activity, str],
        speak: str = None,
        input_hint: str = None,
    ) -> Optional[ResourceResponse]:
        responses = []

        async def logic(proactive_context: TurnContext):
            responses.append(await proactive_context.send_activity(activity_or_text, speak, input_hint))

        await self.continue_conversation(reference_or_context, logic)
        return responses[0] if responses else None
