"""
Authorization manager: builds one AuthorizationGuard per configured auth handler.

Handler settings may be given in code or fall back to environment variables named
after the handler id, e.g. ``GRAPH_connectionName`` for handler ``GRAPH``.
"""
import logging
import os
from typing import Any, Dict, Iterator, List, Mapping, Optional, Union

from bot_core.turn_context import TurnContext
from user_auth.auth_provider import AuthConfigurationError
from user_auth.authorization_guard import (
    AuthorizationGuard,
    AuthorizationGuardContext,
    AuthorizationGuardSettings,
    CancelledCallback,
    FailureCallback,
    SuccessCallback,
)
from user_auth.guard_storage import GuardStorage

log = logging.getLogger(__name__)

__all__ = [
    "AuthConfigurationError",
    "Authorization",
    "load_handler_settings",
]

HandlerSettings = Union[AuthorizationGuardSettings, Mapping[str, Any]]


def _env(handler_id: str, suffix: str) -> Optional[str]:
    value = os.environ.get(f"{handler_id}_{suffix}")
    return value.strip() if value and value.strip() else None


def load_handler_settings(handler_id: str, settings: Optional[HandlerSettings] = None) -> AuthorizationGuardSettings:
    """
    Resolve an auth handler's settings. Explicit values win over the environment.

    Environment fallbacks: ``{ID}_connectionName``, ``{ID}_connectionTitle``,
    ``{ID}_connectionText``, ``{ID}_cnxPrefix``, ``{ID}_scopes`` (comma separated)
    and ``{ID}_maxAttempts``.
    """
    if isinstance(settings, AuthorizationGuardSettings):
        values = settings.model_dump(exclude_unset=True)
    else:
        values = dict(settings or {})

    defaults = AuthorizationGuardSettings()
    values["name"] = values.get("name") or _env(handler_id, "connectionName")
    values["title"] = values.get("title") or _env(handler_id, "connectionTitle") or defaults.title
    values["text"] = values.get("text") or _env(handler_id, "connectionText") or defaults.text
    values["cnx_prefix"] = values.get("cnx_prefix") or _env(handler_id, "cnxPrefix")

    if not values.get("scopes"):
        scopes = _env(handler_id, "scopes")
        values["scopes"] = [s.strip() for s in scopes.split(",") if s.strip()] if scopes else None

    if values.get("max_attempts") is None:
        max_attempts = _env(handler_id, "maxAttempts")
        if max_attempts:
            try:
                values["max_attempts"] = int(max_attempts)
            except ValueError as e:
                raise AuthConfigurationError(
                    f"{handler_id}_maxAttempts must be an integer, got '{max_attempts}'."
                ) from e
        else:
            values.pop("max_attempts", None)

    if not values["name"]:
        raise AuthConfigurationError(
            f"The 'name' property or '{handler_id}_connectionName' env variable is required "
            f"to initialize the '{handler_id}' auth handler."
        )
    return AuthorizationGuardSettings(**values)


class Authorization:
    """Guards keyed by auth handler id, plus convenience calls routed to them."""

    def __init__(
        self,
        storage,
        handlers: Mapping[str, Optional[HandlerSettings]],
        user_token_client,
        auth_provider=None,
        auth_config=None,
    ):
        if storage is None:
            raise AuthConfigurationError("Storage is required for user authorization.")
        if not handlers:
            raise AuthConfigurationError("At least one auth handler must be configured.")

        self._storage = storage
        self._guards: Dict[str, AuthorizationGuard] = {}
        for handler_id, settings in handlers.items():
            resolved = load_handler_settings(handler_id, settings)
            self._guards[handler_id] = AuthorizationGuard(
                handler_id,
                resolved,
                storage,
                user_token_client,
                auth_provider=auth_provider,
                auth_config=auth_config,
            )
            log.info(f"Auth handler '{handler_id}' configured for connection '{resolved.name}'")

    @property
    def handler_ids(self) -> List[str]:
        return list(self._guards)

    def __iter__(self) -> Iterator[AuthorizationGuard]:
        return iter(self._guards.values())

    def guard(self, handler_id: str) -> AuthorizationGuard:
        guard = self._guards.get(handler_id)
        if guard is None:
            raise AuthConfigurationError(f"Cannot find auth handler with id '{handler_id}'.")
        return guard

    def guards(self, handler_ids) -> List[AuthorizationGuard]:
        return [self.guard(handler_id) for handler_id in handler_ids or []]

    async def get_token(self, context: TurnContext, handler_id: str) -> AuthorizationGuardContext:
        return await self.guard(handler_id).context(context)

    async def sign_out(self, context: TurnContext, handler_id: str = None) -> None:
        """Sign the user out of one handler (or all), dropping any pending sign-in."""
        targets = [self.guard(handler_id)] if handler_id else list(self._guards.values())
        for guard in targets:
            await guard.logout(context)
        await GuardStorage(self._storage, context).delete()

    async def cancel(self, context: TurnContext, handler_id: str) -> bool:
        return await self.guard(handler_id).cancel(context)

    def on_sign_in_success(self, callback: SuccessCallback, handler_id: str = None) -> None:
        for guard in self._targets(handler_id):
            guard.on_success(callback)

    def on_sign_in_failure(self, callback: FailureCallback, handler_id: str = None) -> None:
        for guard in self._targets(handler_id):
            guard.on_failure(callback)

    def on_sign_in_cancelled(self, callback: CancelledCallback, handler_id: str = None) -> None:
        for guard in self._targets(handler_id):
            guard.on_cancelled(callback)

    def _targets(self, handler_id: Optional[str]) -> List[AuthorizationGuard]:
        return [self.guard(handler_id)] if handler_id else list(self._guards.values())
