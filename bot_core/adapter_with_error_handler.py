# File: bot_core/adapter_with_error_handler.py
import logging
import traceback
from datetime import datetime, timezone

from botbuilder.schema import ActivityTypes, Activity  # type: ignore

from bot_core.cloud_adapter import CloudAdapter
from bot_core.turn_context import TurnContext

log = logging.getLogger(__name__)

ERROR_MESSAGE = "The agent encountered an error or bug."
ERROR_FOLLOW_UP = "To continue to run this agent, please fix the agent source code."


class AdapterWithErrorHandler(CloudAdapter):
    def __init__(self, connector_client_factory, user_token_client=None, auth_provider=None, auth_config=None, config=None):
        super().__init__(
            connector_client_factory,
            user_token_client=user_token_client,
            auth_provider=auth_provider,
            auth_config=auth_config,
        )
        self.config = config

        async def on_error(context: TurnContext, error: Exception):
            log.error(f"[on_turn_error] unhandled error: {error}\n{traceback.format_exc()}")

            # Send a message to the user
            await context.send_activity(ERROR_MESSAGE)
            await context.send_activity(ERROR_FOLLOW_UP)
            # Send a trace activity if connected to the Bot Framework Emulator
            if context.activity.channel_id == "emulator":
                trace_activity = Activity(
                    label="TurnError",
                    name="on_turn_error Trace",
                    timestamp=datetime.now(timezone.utc),
                    type=ActivityTypes.trace,
                    value=f"{error}",
                    value_type="https://www.botframework.com/schemas/error",
                )
                # Displayed in Bot Framework Emulator
                await context.send_activity(trace_activity)

        self.on_turn_error = on_error
