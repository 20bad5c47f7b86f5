# core_logic/extensions.py
"""Channel-scoped route registration for agent applications."""
import logging
from typing import Iterable

from bot_core.turn_context import TurnContext
from core_logic.route_list import RouteHandler, RouteRank, RouteSelector, evaluate_selector

log = logging.getLogger(__name__)


class AgentExtension:
    """
    Registers routes that only match activities from one channel.

    Routes go through ``AgentApplication.add_route`` like any other; the
    extension only wraps the selector with a channel check.
    """

    def __init__(self, channel_id: str):
        if not channel_id:
            raise ValueError("AgentExtension requires a channel id.")
        self.channel_id = channel_id

    def matches_channel(self, context: TurnContext) -> bool:
        return context.activity.channel_id == self.channel_id

    def add_route(
        self,
        app,
        selector: RouteSelector,
        handler: RouteHandler,
        is_invoke_route: bool = False,
        rank: float = RouteRank.UNSPECIFIED,
        auth_handlers: Iterable[str] = (),
        bypass_guards: bool = False,
    ):
        async def ensure_channel_matches(context: TurnContext) -> bool:
            return self.matches_channel(context) and await evaluate_selector(selector, context)

        log.debug(f"Registering '{self.channel_id}' route (invoke={is_invoke_route})")
        return app.add_route(
            ensure_channel_matches,
            handler,
            is_invoke_route=is_invoke_route,
            rank=rank,
            auth_handlers=auth_handlers,
            bypass_guards=bypass_guards,
        )
