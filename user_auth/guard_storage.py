"""Persistence of the active sign-in flow, one record per user per channel."""
import logging
from typing import Optional

from botbuilder.core import Storage
from pydantic import ValidationError

from bot_core.turn_context import TurnContext
from state_models import ActiveGuard

log = logging.getLogger(__name__)


class GuardStorage:
    def __init__(self, storage: Storage, context: TurnContext):
        self._storage = storage
        self._context = context

    @property
    def key(self) -> str:
        activity = self._context.activity
        channel_id = (activity.channel_id or "").strip()
        user_id = ((activity.from_property.id if activity.from_property else None) or "").strip()
        if not channel_id or not user_id:
            raise ValueError(
                "Both 'activity.channel_id' and 'activity.from_property.id' are required "
                "to generate the GuardStorage key."
            )
        return f"{channel_id}/{user_id}"

    async def read(self) -> Optional[ActiveGuard]:
        key = self.key
        items = await self._storage.read([key])
        item = items.get(key)
        if not item:
            return None
        try:
            return ActiveGuard.model_validate(item)
        except ValidationError as e:
            log.warning(f"Discarding unreadable sign-in record '{key}': {e.error_count()} error(s)")
            await self.delete()
            return None

    async def write(self, active: ActiveGuard) -> None:
        await self._storage.write({self.key: active})

    async def delete(self) -> None:
        await self._storage.delete([self.key])
