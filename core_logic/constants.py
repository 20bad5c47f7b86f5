# core_logic/constants.py

"""
This module defines constants shared by the turn pipeline, the route table,
the sign-in guards and the streaming response.
"""

# --- Turn state keys ---
INVOKE_RESPONSE_KEY = "invokeResponse"
"""Turn-state key under which an outgoing invokeResponse activity is parked."""

AGENT_CALLBACK_HANDLER_KEY = "agentCallbackHandler"
"""Turn-state key holding the logic callback of the running turn."""

CONNECTOR_CLIENT_KEY = "ConnectorClient"
"""Turn-state key for the connector client cached for the turn."""

USER_TOKEN_CLIENT_KEY = "UserTokenClient"
"""Turn-state key for the user token client cached for the turn."""

# --- Activity types the core treats specially ---
DELAY_ACTIVITY_TYPE = "delay"
"""Pseudo activity type; the adapter sleeps for `value` milliseconds instead of sending."""

INVOKE_RESPONSE_ACTIVITY_TYPE = "invokeResponse"
"""Internal activity type carrying the synchronous response of an invoke."""

CONTINUE_CONVERSATION_EVENT = "ContinueConversation"
"""Name of the event activity used to resume a conversation proactively."""

# --- Sign-in invoke names ---
SIGNIN_TOKEN_EXCHANGE = "signin/tokenExchange"
SIGNIN_VERIFY_STATE = "signin/verifyState"
SIGNIN_FAILURE = "signin/failure"
CANCELLED_BY_USER = "CancelledByUser"
"""Magic-code value a channel sends when the user closes the sign-in dialog."""

# --- Sign-in limits ---
DEFAULT_SIGN_IN_ATTEMPTS = 3
"""Magic-code submissions allowed before the flow is abandoned."""

DEFAULT_FLOW_EXPIRY_SECONDS = 30
"""Wall-clock lifetime of a pending sign-in, checked on the next incoming activity."""

BOT_FRAMEWORK_SCOPE = "https://api.botframework.com"
"""Resource used to authenticate against the connector and token services."""

# --- Typing indicator ---
TYPING_TIMER_DELAY = 1.0
"""Seconds between typing activities while a long handler runs."""

# --- Streaming ---
TEAMS_STREAMING_INTERVAL = 1.0
WEBCHAT_STREAMING_INTERVAL = 0.5
STREAM_FINAL_FALLBACK_TEXT = "end stream response"
"""Text of the final streamed message when no chunk was ever queued."""

STREAMING_INTERVALS = {
    "msteams": TEAMS_STREAMING_INTERVAL,
    "webchat": WEBCHAT_STREAMING_INTERVAL,
    "directline": WEBCHAT_STREAMING_INTERVAL,
}
"""Channels that accept streamed typing chunks, with the seconds to wait between sends."""
