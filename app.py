# -- app.py --
"""
Main entry point for the agent host (aiohttp).
"""
import sys
import logging
from typing import Optional

from aiohttp import web
from botbuilder.schema import Activity  # type: ignore

from bot_core.adapter_with_error_handler import AdapterWithErrorHandler
from bot_core.cloud_adapter import CloudAdapter
from bot_core.connector_client import RestConnectorClientFactory
from bot_core.redis_storage import RedisStorage
from bot_core.storage import MemoryStorage
from bot_core.turn_context import TurnContext
from config import APP_VERSION, Config, get_config
from core_logic.agent_application import AgentApplication, AgentApplicationOptions
from core_logic.turn_state import TurnState
from user_auth.auth_provider import AuthConfiguration, MsalAuthProvider
from user_auth.user_token_client import RestUserTokenClient
from utils.logging_config import setup_logging

logger = logging.getLogger(__name__)

ADAPTER_KEY = web.AppKey("adapter", CloudAdapter)
AGENT_KEY = web.AppKey("agent", AgentApplication)
CONFIG_KEY = web.AppKey("config", Config)


def create_storage(config: Config):
    if config.MEMORY_TYPE == "redis":
        logger.info("Using Redis storage for agent state.")
        return RedisStorage(config.settings)
    logger.info("Using in-memory storage for agent state.")
    return MemoryStorage()


def create_adapter(config: Config) -> AdapterWithErrorHandler:
    auth_provider = MsalAuthProvider()
    auth_config = AuthConfiguration(
        client_id=config.MICROSOFT_APP_ID,
        client_secret=config.MICROSOFT_APP_PASSWORD,
        tenant_id=config.MICROSOFT_APP_TENANT_ID,
    )
    if not auth_config.client_id:
        logger.warning("MICROSOFT_APP_ID is not set; outbound calls will be anonymous (emulator only).")

    return AdapterWithErrorHandler(
        RestConnectorClientFactory(auth_provider, auth_config),
        user_token_client=RestUserTokenClient(auth_provider, auth_config),
        auth_provider=auth_provider,
        auth_config=auth_config,
        config=config,
    )


def create_agent(config: Config, adapter: CloudAdapter, storage) -> AgentApplication:
    handler_ids = config.AUTH_HANDLERS
    agent = AgentApplication(
        AgentApplicationOptions(
            adapter=adapter,
            storage=storage,
            authorization={handler_id: None for handler_id in handler_ids} or None,
            agent_app_id=config.MICROSOFT_APP_ID,
            start_typing_timer=config.START_TYPING_TIMER,
            long_running_messages=config.LONG_RUNNING_MESSAGES,
        )
    )

    async def welcome(context: TurnContext, state: TurnState):
        for member in context.activity.members_added or []:
            if member.id != context.activity.recipient.id:
                await context.send_activity("Welcome! Send any message and I will echo it back.")

    async def sign_out(context: TurnContext, state: TurnState):
        if handler_ids:
            await agent.authorization.sign_out(context)
        await context.send_activity("You have been signed out.")

    async def echo(context: TurnContext, state: TurnState):
        count = (state.get_value("conversation.count") or 0) + 1
        state.set_value("conversation.count", count)
        await context.send_activity(f"[{count}] you said: {context.activity.text}")

    agent.on_conversation_update("membersAdded", welcome)
    agent.on_message("/signout", sign_out, bypass_guards=True)

    for handler_id in handler_ids:
        async def show_token(context: TurnContext, state: TurnState, handler_id=handler_id):
            token = await agent.authorization.get_token(context, handler_id)
            status = "available" if token.token else "missing"
            await context.send_activity(f"Signed in with '{handler_id}'; token {status}.")

        agent.on_message(f"/{handler_id.lower()}", show_token, auth_handlers=[handler_id])

    if handler_ids:
        async def on_success(context: TurnContext, state: TurnState, handler_id: str):
            await context.send_activity(f"Sign-in with '{handler_id}' completed.")

        async def on_failure(context: TurnContext, state: TurnState, handler_id: str, reason: str):
            await context.send_activity(f"Sign-in with '{handler_id}' failed: {reason}")

        agent.on_sign_in_success(on_success)
        agent.on_sign_in_failure(on_failure)

    agent.on_activity("message", echo)
    return agent


async def messages(req: web.Request) -> web.Response:
    if "application/json" not in req.headers.get("Content-Type", ""):
        logger.warning("Request received with non-JSON content type.")
        return web.Response(status=415)

    try:
        body = await req.json()
    except ValueError as json_e:
        logger.error(f"Failed to parse request body as JSON: {json_e}")
        return web.Response(status=400, text="Invalid JSON body")

    activity = Activity().deserialize(body)
    user_id = activity.from_property.id if activity.from_property else "N/A"
    conversation_id = activity.conversation.id if activity.conversation else "N/A"
    logger.info(f"Received activity: Type='{activity.type}', From='{user_id}', ConvID='{conversation_id}'")

    adapter = req.app[ADAPTER_KEY]
    agent = req.app[AGENT_KEY]
    try:
        response = await adapter.process_activity(activity, agent.run)
    except Exception as exception:
        logger.error(f"Error processing activity in messages handler: {exception}", exc_info=True)
        return web.Response(status=500, text="Internal Server Error")

    if response:
        logger.debug(f"Sending response with status: {response.status}")
        return web.json_response(response.body, status=int(response.status))
    return web.Response(status=200)


async def healthz(req: web.Request) -> web.Response:
    config = req.app[CONFIG_KEY]
    return web.json_response({"status": "OK", "version": APP_VERSION, "environment": config.APP_ENV})


async def on_shutdown_cleanup(app: web.Application):
    logger.info("Agent host shutting down. Cleaning up resources...")
    storage = app[AGENT_KEY].storage
    if isinstance(storage, RedisStorage):
        logger.info("Closing Redis storage connection...")
        await storage.close()
    await app[ADAPTER_KEY].close()


def create_app(config: Optional[Config] = None, adapter: Optional[CloudAdapter] = None, agent: Optional[AgentApplication] = None) -> web.Application:
    config = config or get_config()
    if adapter is None:
        adapter = create_adapter(config)
    if agent is None:
        agent = create_agent(config, adapter, create_storage(config))

    server_app = web.Application()
    server_app[CONFIG_KEY] = config
    server_app[ADAPTER_KEY] = adapter
    server_app[AGENT_KEY] = agent
    server_app.router.add_post(config.BOT_API_MESSAGES_ENDPOINT, messages)
    server_app.router.add_get(config.BOT_API_HEALTHCHECK_ENDPOINT, healthz)
    server_app.on_cleanup.append(on_shutdown_cleanup)
    return server_app


if __name__ == "__main__":
    try:
        APP_CONFIG = get_config()
    except ValueError as config_e:
        print(f"FATAL: Configuration error: {config_e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(APP_CONFIG.LOG_LEVEL)
    try:
        SERVER_APP = create_app(APP_CONFIG)
        logger.info(f"Agent server starting on http://0.0.0.0:{APP_CONFIG.PORT}")
        web.run_app(SERVER_APP, host="0.0.0.0", port=APP_CONFIG.PORT)
    except Exception as error:
        logger.critical(f"Failed to start agent server: {error}", exc_info=True)
        sys.exit(1)
