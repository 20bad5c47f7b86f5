# File: bot_core/middleware.py
"""Adapter-level middleware run before the agent logic of every turn."""
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List

from bot_core.turn_context import TurnContext

log = logging.getLogger(__name__)


class Middleware(ABC):
    @abstractmethod
    async def on_turn(self, context: TurnContext, logic: Callable[[], Awaitable]):
        """Process the turn; await ``logic()`` to let the rest of the pipeline run."""
        raise NotImplementedError()


class AnonymousMiddleware(Middleware):
    """Wraps a plain ``async def handler(context, next)`` as middleware."""

    def __init__(self, handler: Callable[[TurnContext, Callable[[], Awaitable]], Awaitable]):
        if not callable(handler):
            raise TypeError("AnonymousMiddleware(): handler must be callable.")
        self._handler = handler

    async def on_turn(self, context: TurnContext, logic: Callable[[], Awaitable]):
        return await self._handler(context, logic)


class MiddlewareSet(Middleware):
    """Ordered middleware pipeline. Middleware that skips ``next`` ends the turn."""

    def __init__(self):
        self._middleware: List[Middleware] = []

    def use(self, *middleware) -> "MiddlewareSet":
        for item in middleware:
            if isinstance(item, Middleware):
                self._middleware.append(item)
            elif callable(item):
                self._middleware.append(AnonymousMiddleware(item))
            else:
                raise TypeError(f"MiddlewareSet.use(): {item!r} is not middleware.")
        return self

    async def on_turn(self, context: TurnContext, logic: Callable[[], Awaitable]):
        await self.receive_activity_with_status(context, lambda ctx: logic())

    async def receive_activity_with_status(
        self, context: TurnContext, callback: Callable[[TurnContext], Awaitable]
    ):
        return await self._receive_activity_internal(context, callback, 0)

    async def _receive_activity_internal(self, context: TurnContext, callback, next_index: int):
        if next_index == len(self._middleware):
            if callback is not None:
                return await callback(context)
            return None

        next_middleware = self._middleware[next_index]

        async def call_next_middleware():
            return await self._receive_activity_internal(context, callback, next_index + 1)

        log.debug(f"Running middleware {type(next_middleware).__name__} ({next_index + 1}/{len(self._middleware)})")
        return await next_middleware.on_turn(context, call_next_middleware)
