# File: bot_core/turn_context.py
"""
Per-turn context: one inbound activity, a turn-scoped state bag and the
send/update/delete interceptor chains every outbound operation runs through.
"""
import logging
from copy import copy
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from botbuilder.core import MessageFactory
from botbuilder.schema import (  # type: ignore
    Activity,
    ActivityTypes,
    ConversationReference,
    DeliveryModes,
    InputHints,
    ResourceResponse,
)

from core_logic.constants import (
    DELAY_ACTIVITY_TYPE,
    INVOKE_RESPONSE_ACTIVITY_TYPE,
    INVOKE_RESPONSE_KEY,
)

log = logging.getLogger(__name__)

SendActivitiesHandler = Callable[["TurnContext", List[Activity], Callable[[], Awaitable]], Awaitable]
UpdateActivityHandler = Callable[["TurnContext", Activity, Callable[[], Awaitable]], Awaitable]
DeleteActivityHandler = Callable[["TurnContext", ConversationReference, Callable[[], Awaitable]], Awaitable]

_MISSING = object()

# Sends of these types never mark the turn as responded.
NON_RESPONSE_TYPES = {
    ActivityTypes.trace.value,
    DELAY_ACTIVITY_TYPE,
    INVOKE_RESPONSE_ACTIVITY_TYPE,
}


def activity_type(activity: Activity) -> Optional[str]:
    """Activity type as a plain string (schema enums and raw strings both occur)."""
    value = getattr(activity, "type", None)
    return getattr(value, "value", value)


class TurnStateBag(dict):
    """Turn-scoped key/value bag with scoped overrides via push/restore."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._saved: Dict[str, List[Any]] = {}

    def push(self, key: str, value: Any) -> None:
        self._saved.setdefault(key, []).append(self.get(key, _MISSING))
        self[key] = value

    def restore(self, key: str) -> Any:
        """Undo the most recent push for ``key``; returns the value that was pushed."""
        current = self.get(key)
        stack = self._saved.get(key)
        if not stack:
            self.pop(key, None)
            return current
        previous = stack.pop()
        if previous is _MISSING:
            self.pop(key, None)
        else:
            self[key] = previous
        return current


class TurnContext:
    """
    Context object for a single turn.

    Interceptors registered with ``on_send_activities``, ``on_update_activity`` and
    ``on_delete_activity`` receive ``(context, payload, next)`` and must await
    ``next()`` to continue; skipping it suppresses the remaining interceptors and
    the I/O itself.
    """

    def __init__(self, adapter_or_context, request: Activity = None):
        if isinstance(adapter_or_context, TurnContext):
            adapter_or_context.copy_to(self)
            return

        if adapter_or_context is None:
            raise TypeError("TurnContext.__init__(): missing adapter.")
        if request is None:
            raise TypeError("TurnContext.__init__(): missing activity.")

        self._adapter = adapter_or_context
        self._activity = request
        self._responded_ref = {"responded": False}
        self._turn_state = TurnStateBag()
        self._on_send_activities: List[SendActivitiesHandler] = []
        self._on_update_activity: List[UpdateActivityHandler] = []
        self._on_delete_activity: List[DeleteActivityHandler] = []
        self._buffered_reply_activities: List[Activity] = []

    def copy_to(self, context: "TurnContext") -> None:
        for attribute in (
            "_adapter",
            "_activity",
            "_responded_ref",
            "_turn_state",
            "_on_send_activities",
            "_on_update_activity",
            "_on_delete_activity",
            "_buffered_reply_activities",
        ):
            setattr(context, attribute, getattr(self, attribute))

    # --- Properties ---

    @property
    def adapter(self):
        return self._adapter

    @property
    def activity(self) -> Activity:
        return self._activity

    @property
    def turn_state(self) -> TurnStateBag:
        return self._turn_state

    @property
    def buffered_reply_activities(self) -> List[Activity]:
        return self._buffered_reply_activities

    @property
    def responded(self) -> bool:
        return self._responded_ref["responded"]

    @responded.setter
    def responded(self, value: bool):
        if not value:
            raise ValueError("TurnContext: cannot set 'responded' to a value of 'False'.")
        self._responded_ref["responded"] = True

    @property
    def locale(self) -> Optional[str]:
        return self._turn_state.get("locale", self._activity.locale)

    @locale.setter
    def locale(self, value: Optional[str]):
        self._turn_state["locale"] = value

    # --- Interceptor registration ---

    def on_send_activities(self, handler: SendActivitiesHandler) -> "TurnContext":
        self._on_send_activities.append(handler)
        return self

    def on_update_activity(self, handler: UpdateActivityHandler) -> "TurnContext":
        self._on_update_activity.append(handler)
        return self

    def on_delete_activity(self, handler: DeleteActivityHandler) -> "TurnContext":
        self._on_delete_activity.append(handler)
        return self

    # --- Outbound operations ---

    async def send_activity(
        self,
        activity_or_text: Union[Activity, str],
        speak: str = None,
        input_hint: str = None,
    ) -> Optional[ResourceResponse]:
        if isinstance(activity_or_text, str):
            activity = MessageFactory.text(
                activity_or_text,
                speak=speak,
                input_hint=input_hint or InputHints.accepting_input,
            )
        else:
            activity = activity_or_text

        responses = await self.send_activities([activity])
        return responses[0] if responses else None

    async def send_activities(self, activities: List[Activity]) -> List[ResourceResponse]:
        sent_non_trace_activity = False
        reference = TurnContext.get_conversation_reference(self._activity)

        output: List[Activity] = []
        for activity in activities:
            outgoing = TurnContext.apply_conversation_reference(copy(activity), reference)
            if not outgoing.type:
                outgoing.type = ActivityTypes.message
            if activity_type(outgoing) not in NON_RESPONSE_TYPES:
                sent_non_trace_activity = True
            outgoing.id = None
            output.append(outgoing)

        async def logic():
            invoke_responses = [a for a in output if activity_type(a) == INVOKE_RESPONSE_ACTIVITY_TYPE]
            if invoke_responses:
                self._turn_state[INVOKE_RESPONSE_KEY] = invoke_responses[-1]

            if self._activity.delivery_mode == DeliveryModes.expect_replies:
                responses = []
                for outgoing in output:
                    if activity_type(outgoing) != INVOKE_RESPONSE_ACTIVITY_TYPE:
                        self._buffered_reply_activities.append(outgoing)
                    responses.append(ResourceResponse(id=""))
            else:
                responses = await self._adapter.send_activities(self, output) or []
                for outgoing, response in zip(output, responses):
                    if response is not None:
                        outgoing.id = response.id

            if sent_non_trace_activity:
                self.responded = True
            return responses

        return await self._emit(self._on_send_activities, output, logic)

    async def send_trace_activity(
        self, name: str, value: object = None, value_type: str = None, label: str = None
    ) -> Optional[ResourceResponse]:
        trace_activity = Activity(
            type=ActivityTypes.trace,
            timestamp=datetime.now(timezone.utc),
            name=name,
            value=value,
            value_type=value_type,
            label=label,
        )
        return await self.send_activity(trace_activity)

    async def update_activity(self, activity: Activity):
        reference = TurnContext.get_conversation_reference(self._activity)
        outgoing = TurnContext.apply_conversation_reference(copy(activity), reference)

        async def logic():
            return await self._adapter.update_activity(self, outgoing)

        return await self._emit(self._on_update_activity, outgoing, logic)

    async def delete_activity(self, id_or_reference: Union[str, ConversationReference]):
        if isinstance(id_or_reference, str):
            reference = TurnContext.get_conversation_reference(self._activity)
            reference.activity_id = id_or_reference
        else:
            reference = id_or_reference

        async def logic():
            return await self._adapter.delete_activity(self, reference)

        return await self._emit(self._on_delete_activity, reference, logic)

    async def _emit(self, handlers, payload, logic: Callable[[], Awaitable]):
        chain = list(handlers)

        async def emit_next(index: int):
            if index < len(chain):
                return await chain[index](self, payload, lambda: emit_next(index + 1))
            return await logic()

        return await emit_next(0)

    # --- Conversation reference helpers ---

    @staticmethod
    def get_conversation_reference(activity: Activity) -> ConversationReference:
        return ConversationReference(
            activity_id=activity.id,
            user=copy(activity.from_property),
            bot=copy(activity.recipient),
            conversation=copy(activity.conversation),
            channel_id=activity.channel_id,
            locale=activity.locale,
            service_url=activity.service_url,
        )

    @staticmethod
    def apply_conversation_reference(
        activity: Activity, reference: ConversationReference, is_incoming: bool = False
    ) -> Activity:
        activity.channel_id = reference.channel_id
        activity.locale = activity.locale or reference.locale
        activity.service_url = reference.service_url
        activity.conversation = reference.conversation
        if is_incoming:
            activity.from_property = reference.user
            activity.recipient = reference.bot
            if reference.activity_id:
                activity.id = reference.activity_id
        else:
            activity.from_property = reference.bot
            activity.recipient = reference.user
            if reference.activity_id and not activity.reply_to_id:
                activity.reply_to_id = reference.activity_id
        return activity
