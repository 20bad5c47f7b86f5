# core_logic/turn_state.py
"""
Scoped state handed to route handlers alongside the turn context.

``conversation`` and ``user`` are durable and backed by BotState; ``temp`` lives
only for the turn. Paths are ``scope.name``; a bare ``name`` means ``temp.name``.
"""
import logging
from typing import Any, Dict, Optional

from botbuilder.core import Storage

from bot_core.bot_state import BotState
from bot_core.turn_context import TurnContext

log = logging.getLogger(__name__)

CONVERSATION_SCOPE = "conversation"
USER_SCOPE = "user"
TEMP_SCOPE = "temp"

STATE_NOT_LOADED = "TurnState hasn't been loaded. Call load() first."


class TurnState:
    def __init__(self):
        self._context: Optional[TurnContext] = None
        self._storage: Optional[Storage] = None
        self._bot_states: Dict[str, BotState] = {}
        self._deleted: set = set()
        self._temp: Optional[Dict[str, Any]] = None
        self._is_loaded = False

    @property
    def is_loaded(self) -> bool:
        return self._is_loaded

    # --- Scopes ---

    def _scope(self, scope: str) -> Dict[str, Any]:
        if not self._is_loaded:
            raise RuntimeError(STATE_NOT_LOADED)
        if scope == TEMP_SCOPE:
            return self._temp
        bot_state = self._bot_states.get(scope)
        if bot_state is None:
            raise ValueError(f"Invalid state scope: {scope}")
        state = bot_state.get(self._context)
        if state is None:
            raise RuntimeError(STATE_NOT_LOADED)
        return state

    def _replace(self, scope: str, value: Dict[str, Any]) -> None:
        current = self._scope(scope)
        current.clear()
        current.update(value or {})
        self._deleted.discard(scope)

    @property
    def conversation(self) -> Dict[str, Any]:
        return self._scope(CONVERSATION_SCOPE)

    @conversation.setter
    def conversation(self, value: Dict[str, Any]):
        self._replace(CONVERSATION_SCOPE, value)

    @property
    def user(self) -> Dict[str, Any]:
        return self._scope(USER_SCOPE)

    @user.setter
    def user(self, value: Dict[str, Any]):
        self._replace(USER_SCOPE, value)

    @property
    def temp(self) -> Dict[str, Any]:
        return self._scope(TEMP_SCOPE)

    @temp.setter
    def temp(self, value: Dict[str, Any]):
        self._replace(TEMP_SCOPE, value)

    def delete_conversation_state(self) -> None:
        self.conversation.clear()
        self._deleted.add(CONVERSATION_SCOPE)

    def delete_user_state(self) -> None:
        self.user.clear()
        self._deleted.add(USER_SCOPE)

    def delete_temp_state(self) -> None:
        self.temp.clear()

    # --- Path access ---

    def _scope_and_name(self, path: str):
        parts = path.split(".")
        if len(parts) > 2:
            raise ValueError(f"Invalid state path: {path}")
        if len(parts) == 1:
            parts.insert(0, TEMP_SCOPE)
        if parts[0] not in (CONVERSATION_SCOPE, USER_SCOPE, TEMP_SCOPE):
            raise ValueError(f"Invalid state scope: {parts[0]}")
        return self._scope(parts[0]), parts[1]

    def get_value(self, path: str) -> Any:
        scope, name = self._scope_and_name(path)
        return scope.get(name)

    def set_value(self, path: str, value: Any) -> None:
        scope, name = self._scope_and_name(path)
        scope[name] = value

    def has_value(self, path: str) -> bool:
        scope, name = self._scope_and_name(path)
        return name in scope

    def delete_value(self, path: str) -> None:
        scope, name = self._scope_and_name(path)
        scope.pop(name, None)

    # --- Persistence ---

    @staticmethod
    def compute_storage_keys(context: TurnContext) -> Dict[str, str]:
        activity = context.activity
        channel_id = activity.channel_id
        agent_id = activity.recipient.id if activity.recipient else None
        conversation_id = activity.conversation.id if activity.conversation else None
        user_id = activity.from_property.id if activity.from_property else None

        if not channel_id:
            raise ValueError("missing context.activity.channel_id")
        if not agent_id:
            raise ValueError("missing context.activity.recipient.id")
        if not conversation_id:
            raise ValueError("missing context.activity.conversation.id")
        if not user_id:
            raise ValueError("missing context.activity.from_property.id")

        return {
            CONVERSATION_SCOPE: f"{channel_id}/{agent_id}/conversations/{conversation_id}",
            USER_SCOPE: f"{channel_id}/{agent_id}/users/{user_id}",
        }

    async def load(self, context: TurnContext, storage: Storage, force: bool = False) -> bool:
        """Load durable scopes from ``storage``. Returns False when already loaded."""
        if self._is_loaded and not force:
            return False

        keys = self.compute_storage_keys(context)
        self._context = context
        self._storage = storage
        self._bot_states = {
            scope: BotState(storage, lambda _ctx, key=key: key) for scope, key in keys.items()
        }
        for bot_state in self._bot_states.values():
            await bot_state.load(context, force=True)
        self._temp = {}
        self._deleted = set()
        self._is_loaded = True
        log.debug(f"TurnState loaded for keys {list(keys.values())}")
        return True

    async def save(self, context: TurnContext = None) -> None:
        """Write changed scopes and delete scopes removed during the turn."""
        if not self._is_loaded:
            raise RuntimeError(STATE_NOT_LOADED)

        context = context or self._context
        for scope, bot_state in self._bot_states.items():
            if scope in self._deleted:
                await bot_state.delete(context)
                await bot_state.load(context, force=True)
            else:
                await bot_state.save_changes(context)
        self._deleted = set()
