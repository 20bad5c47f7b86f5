# File: bot_core/cloud_adapter.py
"""
Adapter between the HTTP host and the agent: builds a TurnContext per inbound
activity, runs middleware and agent logic, and delivers outbound activities
through the connector.
"""
import asyncio
import logging
from http import HTTPStatus
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from botbuilder.core import InvokeResponse
from botbuilder.schema import (  # type: ignore
    Activity,
    ActivityTypes,
    ConversationAccount,
    ConversationParameters,
    ConversationReference,
    DeliveryModes,
    ResourceResponse,
)

from bot_core.connector_client import ConnectorClient
from bot_core.middleware import MiddlewareSet
from bot_core.turn_context import TurnContext, activity_type
from core_logic.constants import (
    AGENT_CALLBACK_HANDLER_KEY,
    CONNECTOR_CLIENT_KEY,
    CONTINUE_CONVERSATION_EVENT,
    DELAY_ACTIVITY_TYPE,
    INVOKE_RESPONSE_ACTIVITY_TYPE,
    INVOKE_RESPONSE_KEY,
    USER_TOKEN_CLIENT_KEY,
)
from utils.logging_config import clear_turn_ids, get_logger, start_turn

log = logging.getLogger(__name__)
turn_log = get_logger(__name__)

CREATE_CONVERSATION_EVENT = "CreateConversation"
DEFAULT_DELAY_MS = 1000

AgentLogic = Callable[[TurnContext], Awaitable]
TurnErrorHandler = Callable[[TurnContext, Exception], Awaitable]


class CloudAdapter:
    def __init__(
        self,
        connector_client_factory: Callable[[str], ConnectorClient],
        user_token_client=None,
        auth_provider=None,
        auth_config=None,
    ):
        self._connector_client_factory = connector_client_factory
        self._connector_clients: Dict[str, ConnectorClient] = {}
        self.user_token_client = user_token_client
        self.auth_provider = auth_provider
        self.auth_config = auth_config
        self._middleware = MiddlewareSet()
        self.on_turn_error: Optional[TurnErrorHandler] = None

    def use(self, middleware) -> "CloudAdapter":
        self._middleware.use(middleware)
        return self

    # --- Inbound ---

    async def process_activity(
        self, activity_or_body: Union[Activity, Dict[str, Any]], logic: AgentLogic
    ) -> Optional[InvokeResponse]:
        """
        Run one inbound activity through the pipeline.

        Returns the synchronous HTTP answer: buffered replies for ``expectReplies``,
        the invoke response for invokes, otherwise None.
        """
        if isinstance(activity_or_body, dict):
            activity = Activity().deserialize(activity_or_body)
        else:
            activity = activity_or_body
        if activity is None or not activity.type:
            raise TypeError("CloudAdapter.process_activity(): activity with a type is required.")

        context = self._create_turn_context(activity, logic)
        if activity.delivery_mode != DeliveryModes.expect_replies and activity.service_url:
            context.turn_state[CONNECTOR_CLIENT_KEY] = self._get_connector_client(activity.service_url)

        await self.run_pipeline(context, logic)
        return self._process_turn_results(context)

    async def run_pipeline(self, context: TurnContext, logic: AgentLogic) -> None:
        start_turn(context.activity)
        try:
            log.debug(f"Processing '{activity_type(context.activity)}' activity")
            await self._middleware.receive_activity_with_status(context, logic)
        except Exception as error:
            if self.on_turn_error is None:
                raise
            await self.on_turn_error(context, error)
        finally:
            turn_log.info(
                "turn_finished",
                activity_type=activity_type(context.activity),
                responded=context.responded,
            )
            clear_turn_ids()

    def _create_turn_context(self, activity: Activity, logic: AgentLogic) -> TurnContext:
        context = TurnContext(self, activity)
        context.turn_state[AGENT_CALLBACK_HANDLER_KEY] = logic
        if self.user_token_client is not None:
            context.turn_state[USER_TOKEN_CLIENT_KEY] = self.user_token_client
        return context

    @staticmethod
    def _process_turn_results(context: TurnContext) -> Optional[InvokeResponse]:
        if context.activity.delivery_mode == DeliveryModes.expect_replies:
            return InvokeResponse(
                status=HTTPStatus.OK,
                body={"activities": [a.serialize() for a in context.buffered_reply_activities]},
            )

        if activity_type(context.activity) == ActivityTypes.invoke.value:
            invoke_response = context.turn_state.get(INVOKE_RESPONSE_KEY)
            if invoke_response is None:
                return InvokeResponse(status=HTTPStatus.NOT_IMPLEMENTED)
            value = invoke_response.value
            if isinstance(value, dict):
                return InvokeResponse(status=value.get("status"), body=value.get("body"))
            return value

        return None

    # --- Outbound ---

    def _get_connector_client(self, service_url: str) -> ConnectorClient:
        client = self._connector_clients.get(service_url)
        if client is None:
            client = self._connector_client_factory(service_url)
            self._connector_clients[service_url] = client
        return client

    def _connector_for(self, context: TurnContext) -> ConnectorClient:
        client = context.turn_state.get(CONNECTOR_CLIENT_KEY)
        if client is None:
            if not context.activity.service_url:
                raise RuntimeError("Unable to resolve a connector client: the activity has no service_url.")
            client = self._get_connector_client(context.activity.service_url)
            context.turn_state[CONNECTOR_CLIENT_KEY] = client
        return client

    async def send_activities(self, context: TurnContext, activities: List[Activity]) -> List[ResourceResponse]:
        if not activities:
            raise TypeError("Expecting one or more activities, but the list was empty.")

        responses: List[ResourceResponse] = []
        for activity in activities:
            activity.id = None
            kind = activity_type(activity)
            response = None

            if kind == DELAY_ACTIVITY_TYPE:
                delay_ms = activity.value if isinstance(activity.value, (int, float)) else DEFAULT_DELAY_MS
                await asyncio.sleep(delay_ms / 1000)
            elif kind == INVOKE_RESPONSE_ACTIVITY_TYPE:
                context.turn_state[INVOKE_RESPONSE_KEY] = activity
            elif kind == ActivityTypes.trace.value and activity.channel_id != "emulator":
                pass
            else:
                client = self._connector_for(context)
                if activity.reply_to_id:
                    response = await client.reply_to_activity(
                        activity.conversation.id, activity.reply_to_id, activity
                    )
                else:
                    response = await client.send_to_conversation(activity.conversation.id, activity)

            responses.append(response or ResourceResponse(id=activity.id or ""))
        return responses

    async def update_activity(self, context: TurnContext, activity: Activity) -> ResourceResponse:
        client = self._connector_for(context)
        return await client.update_activity(activity.conversation.id, activity.id, activity)

    async def delete_activity(self, context: TurnContext, reference: ConversationReference) -> None:
        client = self._connector_for(context)
        await client.delete_activity(reference.conversation.id, reference.activity_id)

    # --- Proactive ---

    async def continue_conversation(self, reference: ConversationReference, logic: AgentLogic) -> None:
        """Run ``logic`` in a new turn for an existing conversation."""
        if not callable(logic):
            raise TypeError("CloudAdapter.continue_conversation(): logic must be callable.")
        if reference is None or reference.conversation is None:
            raise TypeError("CloudAdapter.continue_conversation(): reference with a conversation is required.")

        activity = TurnContext.apply_conversation_reference(
            Activity(type=ActivityTypes.event, name=CONTINUE_CONVERSATION_EVENT),
            reference,
            is_incoming=True,
        )
        activity.relates_to = reference
        context = self._create_turn_context(activity, logic)
        if activity.service_url:
            context.turn_state[CONNECTOR_CLIENT_KEY] = self._get_connector_client(activity.service_url)
        await self.run_pipeline(context, logic)

    async def create_conversation(
        self,
        channel_id: str,
        service_url: str,
        parameters: ConversationParameters,
        logic: AgentLogic,
    ) -> None:
        if not service_url:
            raise TypeError("CloudAdapter.create_conversation(): service_url is required.")
        if parameters is None:
            raise TypeError("CloudAdapter.create_conversation(): parameters is required.")

        client = self._get_connector_client(service_url)
        result = await client.create_conversation(parameters)
        log.info(f"Created conversation '{result.id}' on channel '{channel_id}'")

        activity = Activity(
            type=ActivityTypes.event,
            name=CREATE_CONVERSATION_EVENT,
            id=result.activity_id,
            channel_id=channel_id,
            service_url=service_url,
            conversation=ConversationAccount(id=result.id, tenant_id=parameters.tenant_id),
            channel_data=parameters.channel_data,
            recipient=parameters.bot,
        )
        context = self._create_turn_context(activity, logic)
        context.turn_state[CONNECTOR_CLIENT_KEY] = client
        await self.run_pipeline(context, logic)

    async def close(self) -> None:
        for client in self._connector_clients.values():
            await client.close()
        self._connector_clients = {}
        if self.user_token_client is not None:
            await self.user_token_client.close()
