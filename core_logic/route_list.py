# core_logic/route_list.py
"""
Route table for the agent application.

Invoke routes always sort ahead of every other route, since invoke activities
carry short client-side timeouts. Within each group routes are ordered by rank;
equal ranks keep their registration order.
"""
import inspect
import logging
import sys
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterator, List, Optional, Union

from bot_core.turn_context import TurnContext

log = logging.getLogger(__name__)

RouteSelector = Callable[[TurnContext], Union[bool, Awaitable[bool]]]
RouteHandler = Callable[[TurnContext, Any], Awaitable[None]]


class RouteRank:
    FIRST = 0.0
    LAST = sys.float_info.max
    UNSPECIFIED = sys.float_info.max / 2


@dataclass
class AppRoute:
    selector: RouteSelector
    handler: RouteHandler
    is_invoke_route: bool = False
    rank: float = RouteRank.UNSPECIFIED
    auth_handlers: List[str] = field(default_factory=list)
    guards: List[Any] = field(default_factory=list)
    bypass_guards: bool = False


async def evaluate_selector(selector: RouteSelector, context: TurnContext) -> bool:
    """Selectors may be plain or async callables."""
    result = selector(context)
    if inspect.isawaitable(result):
        result = await result
    return bool(result)


class RouteList:
    def __init__(self):
        self._routes: List[AppRoute] = []

    def add_route(
        self,
        selector: RouteSelector,
        handler: RouteHandler,
        is_invoke_route: bool = False,
        rank: float = RouteRank.UNSPECIFIED,
        auth_handlers: Optional[List[str]] = None,
        guards: Optional[List[Any]] = None,
        bypass_guards: bool = False,
    ) -> "RouteList":
        route = AppRoute(
            selector=selector,
            handler=handler,
            is_invoke_route=is_invoke_route,
            rank=RouteRank.UNSPECIFIED if rank is None else rank,
            auth_handlers=list(auth_handlers or []),
            guards=list(guards or []),
            bypass_guards=bypass_guards,
        )
        self._routes.append(route)
        # sorted() is stable, so ties keep insertion order
        self._routes = sorted(
            self._routes, key=lambda r: (0 if r.is_invoke_route else 1, r.rank)
        )
        log.debug(
            f"Route added (invoke={is_invoke_route}, rank={route.rank}, "
            f"auth_handlers={route.auth_handlers}); {len(self._routes)} routes registered"
        )
        return self

    async def find(self, context: TurnContext) -> Optional[AppRoute]:
        """First route whose selector matches ``context``."""
        for route in self._routes:
            if await evaluate_selector(route.selector, context):
                return route
        return None

    def __iter__(self) -> Iterator[AppRoute]:
        return iter(list(self._routes))

    def __len__(self) -> int:
        return len(self._routes)
