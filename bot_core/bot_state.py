# File: bot_core/bot_state.py
"""
Durable per-conversation / per-user state cached in the turn context.

The cached copy carries a hash of its contents; ``save_changes`` only writes
when the hash moved, and always writes with the ``*`` eTag.
"""
import hashlib
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from botbuilder.core import Storage

from bot_core.storage import ETAG_KEY, ETAG_WILDCARD
from bot_core.turn_context import TurnContext

log = logging.getLogger(__name__)

StorageKeyFactory = Callable[[TurnContext], Union[str, Awaitable[str]]]


class CachedBotState:
    def __init__(self, state: Dict[str, Any] = None, hash_value: str = ""):
        self.state = state if state is not None else {}
        self.hash = hash_value


def calculate_change_hash(item: Dict[str, Any]) -> str:
    rest = {k: v for k, v in item.items() if k != ETAG_KEY}
    serialized = json.dumps(rest, sort_keys=True, default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


class BotStatePropertyAccessor:
    """Reads and writes one named property of a BotState."""

    def __init__(self, bot_state: "BotState", name: str):
        self._bot_state = bot_state
        self.name = name

    async def get(self, context: TurnContext, default_value_or_factory=None) -> Any:
        await self._bot_state.load(context, False)
        state = self._bot_state.get(context)
        if self.name not in state and default_value_or_factory is not None:
            default = (
                default_value_or_factory()
                if callable(default_value_or_factory)
                else default_value_or_factory
            )
            state[self.name] = default
        return state.get(self.name)

    async def set(self, context: TurnContext, value: Any) -> None:
        await self._bot_state.load(context, False)
        self._bot_state.get(context)[self.name] = value

    async def delete(self, context: TurnContext) -> None:
        await self._bot_state.load(context, False)
        self._bot_state.get(context).pop(self.name, None)


class BotState:
    def __init__(self, storage: Storage, storage_key: StorageKeyFactory):
        if storage is None:
            raise TypeError("BotState: storage is required.")
        self._storage = storage
        self._storage_key = storage_key
        self._context_service_key = f"{type(self).__name__}:{id(self)}"

    def create_property(self, name: str) -> BotStatePropertyAccessor:
        if not name:
            raise TypeError("BotState.create_property(): name cannot be empty.")
        return BotStatePropertyAccessor(self, name)

    async def _key(self, context: TurnContext) -> str:
        key = self._storage_key(context)
        if inspect.isawaitable(key):
            key = await key
        return key

    async def load(self, context: TurnContext, force: bool = False) -> Dict[str, Any]:
        cached: Optional[CachedBotState] = context.turn_state.get(self._context_service_key)

        if force or cached is None or cached.state is None:
            key = await self._key(context)
            log.debug(f"Reading storage with key {key}")
            items = await self._storage.read([key])
            state = items.get(key) or {}
            context.turn_state[self._context_service_key] = CachedBotState(
                state, calculate_change_hash(state)
            )
            return state

        return cached.state

    async def save_changes(self, context: TurnContext, force: bool = False) -> None:
        cached: Optional[CachedBotState] = context.turn_state.get(self._context_service_key)
        if force or (cached is not None and cached.hash != calculate_change_hash(cached.state)):
            if cached is None:
                cached = CachedBotState()
            cached.state[ETAG_KEY] = ETAG_WILDCARD

            key = await self._key(context)
            log.debug(f"Writing storage with key {key}")
            await self._storage.write({key: cached.state})
            cached.hash = calculate_change_hash(cached.state)
            context.turn_state[self._context_service_key] = cached

    async def clear(self, context: TurnContext) -> None:
        # Empty hash forces the next save_changes to write
        context.turn_state[self._context_service_key] = CachedBotState({}, "")

    async def delete(self, context: TurnContext) -> None:
        context.turn_state.pop(self._context_service_key, None)
        key = await self._key(context)
        log.debug(f"Deleting storage with key {key}")
        await self._storage.delete([key])

    def get(self, context: TurnContext) -> Optional[Dict[str, Any]]:
        cached = context.turn_state.get(self._context_service_key)
        if isinstance(cached, CachedBotState) and isinstance(cached.state, dict):
            return cached.state
        return None


def _require(value, message: str):
    if not value:
        raise ValueError(message)
    return value


class ConversationState(BotState):
    """State keyed by ``{channelId}/conversations/{conversationId}``."""

    def __init__(self, storage: Storage):
        super().__init__(storage, self.get_storage_key)

    @staticmethod
    def get_storage_key(context: TurnContext) -> str:
        activity = context.activity
        channel_id = _require(activity.channel_id, "ConversationState: missing activity.channel_id")
        conversation_id = _require(
            activity.conversation and activity.conversation.id,
            "ConversationState: missing activity.conversation.id",
        )
        return f"{channel_id}/conversations/{conversation_id}"


class UserState(BotState):
    """State keyed by ``{channelId}/users/{userId}``."""

    def __init__(self, storage: Storage):
        super().__init__(storage, self.get_storage_key)

    @staticmethod
    def get_storage_key(context: TurnContext) -> str:
        activity = context.activity
        channel_id = _require(activity.channel_id, "UserState: missing activity.channel_id")
        user_id = _require(
            activity.from_property and activity.from_property.id,
            "UserState: missing activity.from_property.id",
        )
        return f"{channel_id}/users/{user_id}"
