# core_logic/route_manager.py
"""
Resolves the route for a turn and runs its guards.

When a sign-in flow is pending for the user, the route is resolved from the
activity that started the flow (replayed in a fresh TurnContext) so the user
lands back on the handler they originally asked for.
"""
import logging
from dataclasses import replace
from typing import Optional

from botbuilder.core import Storage

from bot_core.turn_context import TurnContext
from core_logic.route_list import AppRoute, RouteList
from state_models import ActiveGuard
from user_auth.authorization_guard import GuardRegisterStatus
from user_auth.guard_storage import GuardStorage

log = logging.getLogger(__name__)


class RouteManager:
    def __init__(self, routes: RouteList, context: TurnContext, storage: Optional[Storage] = None):
        self._routes = routes
        self._context = context
        self._storage = GuardStorage(storage, context) if storage is not None else None
        self._route: Optional[AppRoute] = None
        self._active: Optional[ActiveGuard] = None

    @classmethod
    async def initialize(cls, routes: RouteList, context: TurnContext, storage: Optional[Storage] = None) -> "RouteManager":
        manager = cls(routes, context, storage)
        await manager._resolve()
        return manager

    @property
    def route(self) -> Optional[AppRoute]:
        return self._route

    @property
    def active(self) -> Optional[ActiveGuard]:
        return self._active

    async def guarded(self) -> bool:
        """True when at least one guard of the route did not let the turn through."""
        if self._route is None:
            return False

        active = self._active
        # Guards that start a flow after the resumed one store the activity that picked the route
        trigger = active.to_activity() if active is not None else None
        for guard in self._route.guards:
            status = await guard.register(self._context, active, trigger=trigger)
            log.debug(f"Guard '{guard.id}' registered with status '{status.value}'")
            if status.blocks_handler:
                if status == GuardRegisterStatus.REJECTED and self._storage is not None:
                    await self._storage.delete()
                return True

            # Only the first guard resumes the pending flow
            active = None
            if self._storage is not None:
                await self._storage.delete()
        return False

    async def _resolve(self) -> None:
        live_route = await self._routes.find(self._context)
        if live_route is not None and live_route.bypass_guards:
            # e.g. sign-out must run even while a sign-in is pending
            self._route = live_route
            return

        self._active = await self._read_active()
        if self._active is None:
            self._route = live_route
            return

        log.debug(f"Active guard session found: {self._active.guard}")
        replayed = TurnContext(self._context.adapter, self._active.to_activity())
        route = await self._routes.find(replayed)
        if route is None:
            log.info(f"Pending sign-in for guard '{self._active.guard}' no longer matches a route; ignoring it")
            self._active = None
            self._route = live_route
            return

        # The pending guard runs first; the rest keep their relative order
        guards = sorted(route.guards, key=lambda g: 0 if g.id == self._active.guard else 1)
        self._route = replace(route, guards=guards)

    async def _read_active(self) -> Optional[ActiveGuard]:
        if self._storage is None:
            return None
        active = await self._storage.read()
        if active is None:
            return None

        conversation = self._context.activity.conversation
        if active.conversation_id != (conversation.id if conversation else None):
            log.info(
                f"Discarding sign-in for guard '{active.guard}' started in another conversation"
            )
            await self._storage.delete()
            return None
        return active
