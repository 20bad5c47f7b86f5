# core_logic/typing_timer.py
"""Sends periodic typing indicators while a message is being handled."""
import asyncio
import logging
from typing import List, Optional

from botbuilder.schema import Activity, ActivityTypes  # type: ignore

from bot_core.turn_context import TurnContext, activity_type
from core_logic.constants import TYPING_TIMER_DELAY

log = logging.getLogger(__name__)


def _is_stream_activity(activity: Activity) -> bool:
    channel_data = activity.channel_data
    if isinstance(channel_data, dict):
        return bool(channel_data.get("streamType"))
    return bool(getattr(channel_data, "stream_type", None))


class TypingTimer:
    """
    Cancellable typing loop owned by one turn.

    ``start`` registers a send interceptor on the context; the first outgoing
    message (or streamed chunk) stops the loop before it is sent.
    """

    def __init__(self, delay: float = TYPING_TIMER_DELAY):
        self.delay = delay
        self._task: Optional[asyncio.Task] = None
        self._stopped = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, context: TurnContext) -> bool:
        if self.running or activity_type(context.activity) != ActivityTypes.message.value:
            return False

        self._stopped = False
        context.on_send_activities(self._on_send_activities)
        self._task = asyncio.create_task(self._run(context))
        log.debug(f"Typing timer started ({self.delay}s interval)")
        return True

    def stop(self) -> None:
        self._stopped = True
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            log.debug("Typing timer stopped")

    async def _on_send_activities(self, context: TurnContext, activities: List[Activity], next_send):
        if not self._stopped and any(
            activity_type(a) == ActivityTypes.message.value or _is_stream_activity(a) for a in activities
        ):
            self.stop()
        return await next_send()

    async def _run(self, context: TurnContext) -> None:
        try:
            while not self._stopped:
                await context.send_activity(Activity(type=ActivityTypes.typing))
                await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning(f"Typing indicator failed, stopping timer: {e}")
            self._stopped = True
