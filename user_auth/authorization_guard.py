"""
OAuth sign-in guard attachable to routes.

A guard either approves the turn (token available), parks it (sign-in card sent,
flow persisted), or rejects it (cancelled, failed, out of attempts). Pending
flows are resumed by the route guard manager on the user's next activity.
"""
import inspect
import logging
import re
import time
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Union

from botbuilder.core import CardFactory, InvokeResponse, MessageFactory
from botbuilder.schema import (  # type: ignore
    ActionTypes,
    Activity,
    ActivityTypes,
    CardAction,
    OAuthCard,
)
from jose import JWTError, jwt
from pydantic import BaseModel, ConfigDict, Field

from bot_core.turn_context import TurnContext, activity_type
from core_logic.constants import (
    CANCELLED_BY_USER,
    DEFAULT_FLOW_EXPIRY_SECONDS,
    DEFAULT_SIGN_IN_ATTEMPTS,
    INVOKE_RESPONSE_ACTIVITY_TYPE,
    INVOKE_RESPONSE_KEY,
    SIGNIN_FAILURE,
    SIGNIN_TOKEN_EXCHANGE,
)
from state_models import ActiveGuard
from user_auth.auth_provider import AuthConfigurationError, load_auth_config_from_env
from user_auth.guard_storage import GuardStorage
from user_auth.models import (
    SignInFailureValue,
    TokenExchangeInvokeResponse,
    TokenExchangeValue,
    VerifyStateValue,
    parse_invoke_value,
)
from user_auth.sign_in_flow import (
    Cancelled,
    CodeAccepted,
    CodeRejected,
    ConversationChanged,
    ExchangeFailed,
    Expired,
    FlowBegun,
    FlowFailed,
    FlowPending,
    FlowState,
    FlowSucceeded,
    NoActiveFlow,
    TokenAcquired,
    is_valid_magic_code,
    transition,
)

log = logging.getLogger(__name__)


class GuardRegisterStatus(str, Enum):
    IGNORED = "ignored"    # guard does not apply; the route continues
    APPROVED = "approved"  # token available; the route continues
    PENDING = "pending"    # waiting on the user; the handler must not run
    REJECTED = "rejected"  # cancelled or failed; the handler must not run

    @property
    def blocks_handler(self) -> bool:
        return self in (GuardRegisterStatus.PENDING, GuardRegisterStatus.REJECTED)


def _status_for(state: FlowState) -> GuardRegisterStatus:
    if isinstance(state, FlowSucceeded):
        return GuardRegisterStatus.APPROVED
    if isinstance(state, FlowPending):
        return GuardRegisterStatus.PENDING
    if isinstance(state, FlowFailed):
        return GuardRegisterStatus.REJECTED
    return GuardRegisterStatus.IGNORED


class AuthorizationGuardContext(BaseModel):
    token: Optional[str] = None


class GuardMessages(BaseModel):
    """User-facing texts; ``{placeholders}`` are filled with str.format."""
    invalid_code_format: str = (
        "Please enter a valid **6-digit** code format (_e.g. 123456_).\r\n**{attempts} attempt(s) left...**"
    )
    max_attempts_exceeded: str = (
        "You have exceeded the maximum number of sign-in attempts ({max_attempts}). "
        "Please try again with a new sign-in request."
    )
    invalid_code: str = (
        "Invalid **{code}** code entered. Please sign in again with the card below.\r\n**{attempts} attempt(s) left...**"
    )
    session_expired: str = "Sign-in session expired. Please try again."
    sign_in_failed: str = "Failed to sign-in. Please try again."


class AuthorizationGuardSettings(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: Optional[str] = Field(None, description="OAuth connection name configured on the bot.")
    title: Optional[str] = "Sign-in"
    text: Optional[str] = "Please sign-in to continue"
    cnx_prefix: Optional[str] = Field(None, description="Env prefix of the app registration used for on-behalf-of.")
    scopes: Optional[List[str]] = None
    cancel_trigger: Any = Field(None, description="str (case-insensitive), compiled regex, or selector.")
    max_attempts: int = DEFAULT_SIGN_IN_ATTEMPTS
    flow_expiry_seconds: float = DEFAULT_FLOW_EXPIRY_SECONDS
    messages: GuardMessages = Field(default_factory=GuardMessages)


SuccessCallback = Callable[[TurnContext, AuthorizationGuardContext], Union[None, Awaitable[None]]]
FailureCallback = Callable[[TurnContext, str], Union[None, Awaitable[None]]]
CancelledCallback = Callable[[TurnContext], Union[None, Awaitable[None]]]


async def _maybe_await(result):
    if inspect.isawaitable(result):
        return await result
    return result


class AuthorizationGuard:
    def __init__(
        self,
        guard_id: str,
        settings: AuthorizationGuardSettings,
        storage,
        user_token_client,
        auth_provider=None,
        auth_config=None,
    ):
        self.id = guard_id
        self.settings = settings
        if not settings.name:
            raise AuthConfigurationError(self._prefix("The 'name' setting is required to initialize the guard."))
        if user_token_client is None:
            raise AuthConfigurationError(
                self._prefix("A user token client is required. Ensure the adapter was created with one.")
            )
        self._storage = storage
        self._user_token_client = user_token_client
        self._auth_provider = auth_provider
        self._auth_config = auth_config
        self._key = f"AuthorizationGuard/{guard_id}"
        self._on_success: Optional[SuccessCallback] = None
        self._on_failure: Optional[FailureCallback] = None
        self._on_cancelled: Optional[CancelledCallback] = None

    # --- Public surface ---

    async def context(self, context: TurnContext) -> AuthorizationGuardContext:
        """Token for the current user: from this turn if the guard ran, else from the token service."""
        registered = context.turn_state.get(self._key)
        if registered is not None:
            return registered

        activity = context.activity
        response = await self._user_token_client.get_user_token(
            self.settings.name, activity.channel_id, activity.from_property.id
        )
        return AuthorizationGuardContext(token=response.token)

    async def cancel(self, context: TurnContext) -> bool:
        if self._storage is None:
            return False
        storage = GuardStorage(self._storage, context)
        active = await storage.read()
        if active is None or active.guard != self.id:
            return False

        log.debug(self._prefix("Cancelling active session"))
        await storage.delete()
        await _maybe_await(self._on_cancelled and self._on_cancelled(context))
        return True

    async def logout(self, context: TurnContext) -> bool:
        activity = context.activity
        user_id = activity.from_property.id if activity.from_property else None
        channel_id = activity.channel_id
        if not channel_id or not user_id:
            raise ValueError("Both 'activity.channel_id' and 'activity.from_property.id' are required to perform logout.")

        log.debug(self._prefix(f"Signing out user '{user_id}' from channel '{channel_id}', connection '{self.settings.name}'"))
        await self._user_token_client.sign_out(user_id, self.settings.name, channel_id)
        context.turn_state.pop(self._key, None)
        return True

    def on_success(self, callback: SuccessCallback) -> None:
        self._on_success = callback

    def on_failure(self, callback: FailureCallback) -> None:
        self._on_failure = callback

    def on_cancelled(self, callback: CancelledCallback) -> None:
        self._on_cancelled = callback

    # --- State machine ---

    async def register(
        self,
        context: TurnContext,
        active: Optional[ActiveGuard] = None,
        trigger: Optional[Activity] = None,
    ) -> GuardRegisterStatus:
        """
        Run the guard for the current turn.

        ``active`` is the pending flow being resumed, if any. ``trigger`` is the
        activity that selected the route; a new flow stores it so the route can be
        replayed once sign-in completes. It defaults to the turn's own activity.
        """
        if self._storage is None:
            log.debug(self._prefix("Discarding guard because no storage provider has been configured."))
            return GuardRegisterStatus.IGNORED

        activity = context.activity
        storage = GuardStorage(self._storage, context)

        if active is not None and active.guard != self.id:
            log.debug(self._prefix(f"Pending sign-in belongs to guard '{active.guard}'; starting a new one"))
            active = None

        if active is None:
            return await self._begin(context, storage, trigger or activity)

        flow = active.to_flow_state()

        if await self._is_cancellation_requested(context):
            log.debug(self._prefix("User requested to cancel the sign-in process with the cancel trigger"))
            state = await self._advance(storage, active, flow, Cancelled())
            await self._answer_invoke(context, 200)
            await _maybe_await(self._on_cancelled and self._on_cancelled(context))
            return _status_for(state)

        if activity.name == SIGNIN_FAILURE:
            value = parse_invoke_value(activity)
            detail = value.message if isinstance(value, SignInFailureValue) else None
            log.error(self._prefix(f"Sign-in failure reported by the channel: {detail or 'no detail'}"))
            state = await self._advance(storage, active, flow, ExchangeFailed(reason=detail or "Failed to sign-in"))
            await self._answer_invoke(context, 200)
            await context.send_activity(MessageFactory.text(self.settings.messages.sign_in_failed))
            await _maybe_await(self._on_failure and self._on_failure(context, state.reason))
            return _status_for(state)

        # RouteManager already drops flows of other conversations; this only
        # matters for callers that hand a stored flow to register() themselves.
        conversation_id = activity.conversation.id if activity.conversation else None
        if flow.conversation_id != conversation_id:
            log.debug(self._prefix("Conversation changed during an active sign-in; restarting the flow"))
            await self._advance(storage, active, flow, ConversationChanged())
            return await self._begin(context, storage, activity)

        if active.is_expired():
            log.info(self._prefix("Sign-in session expired; restarting the flow"))
            await self._advance(storage, active, flow, Expired())
            await context.send_activity(MessageFactory.text(self.settings.messages.session_expired))
            return await self._begin(context, storage, active.to_activity())

        if activity.name == SIGNIN_TOKEN_EXCHANGE:
            return await self._exchange(context, storage, active, flow)

        return await self._verify_code(context, storage, active, flow)

    async def _advance(self, storage: GuardStorage, active: ActiveGuard, flow: FlowState, event) -> FlowState:
        """Apply ``event`` and persist the outcome: a pending flow is stored, any other state removes it."""
        state = transition(flow, event)
        if state == flow:
            return state
        if isinstance(state, FlowPending):
            await storage.write(active.with_flow_state(state))
        else:
            await storage.delete()
        return state

    async def _begin(self, context: TurnContext, storage: GuardStorage, trigger: Activity) -> GuardRegisterStatus:
        activity = context.activity
        response = await self._user_token_client.get_token_or_sign_in_resource(
            activity.from_property.id,
            self.settings.name,
            activity.channel_id,
            TurnContext.get_conversation_reference(activity),
            activity.relates_to,
            "",
        )
        token = response.token_response.token if response.token_response else None
        if token:
            log.debug(self._prefix("Token already available; no sign-in needed"))
            return await self._complete(context, token, notify=False)

        flow = transition(
            NoActiveFlow(),
            FlowBegun(
                attempts=self.settings.max_attempts,
                expires_at=time.time() + self.settings.flow_expiry_seconds,
                conversation_id=trigger.conversation.id if trigger.conversation else None,
            ),
        )
        log.debug(self._prefix("Cannot find token. Sending sign-in card"))
        await context.send_activity(MessageFactory.attachment(self._oauth_card(response.sign_in_resource)))
        await storage.write(ActiveGuard.begin(trigger, self.id, flow))
        return _status_for(flow)

    async def _exchange(
        self, context: TurnContext, storage: GuardStorage, active: ActiveGuard, flow: FlowPending
    ) -> GuardRegisterStatus:
        activity = context.activity
        value = parse_invoke_value(activity)

        if not isinstance(value, TokenExchangeValue) or not value.token:
            reason = "The token exchange request is missing a token."
            log.warning(self._prefix(reason))
            await self._answer_invoke(context, 400, self._exchange_failure_body(value, reason))
            return _status_for(flow)

        if value.connection_name and value.connection_name != self.settings.name:
            reason = f"The connection name '{value.connection_name}' does not match the guard's connection."
            log.warning(self._prefix(reason))
            await self._answer_invoke(context, 400, self._exchange_failure_body(value, reason))
            return _status_for(flow)

        response = await self._user_token_client.exchange_token(
            activity.from_property.id,
            self.settings.name,
            activity.channel_id,
            {"id": value.id, "token": value.token},
        )
        if not response.token:
            reason = "Failed to exchange token."
            log.error(self._prefix(reason))
            state = await self._advance(storage, active, flow, ExchangeFailed(reason=reason))
            await self._answer_invoke(context, 412, self._exchange_failure_body(value, reason))
            await _maybe_await(self._on_failure and self._on_failure(context, reason))
            return _status_for(state)

        log.debug(self._prefix("Successfully exchanged token"))
        await self._answer_invoke(context, 200)
        await self._advance(storage, active, flow, TokenAcquired(token=response.token))
        return await self._complete(context, response.token)

    async def _verify_code(
        self, context: TurnContext, storage: GuardStorage, active: ActiveGuard, flow: FlowPending
    ) -> GuardRegisterStatus:
        activity = context.activity
        code = activity.text
        value = parse_invoke_value(activity)
        if isinstance(value, VerifyStateValue):
            log.debug(self._prefix("Getting code from activity.value"))
            code = value.state

        if code == CANCELLED_BY_USER:
            log.warning(self._prefix("Sign-in process was cancelled by the user"))
            state = await self._advance(storage, active, flow, Cancelled())
            await self._answer_invoke(context, 200)
            await _maybe_await(self._on_cancelled and self._on_cancelled(context))
            return _status_for(state)

        if not is_valid_magic_code(code):
            await self._answer_invoke(context, 404)
            state = await self._advance(storage, active, flow, CodeRejected())
            if isinstance(state, FlowFailed):
                await self._attempts_exhausted(context, state)
            else:
                log.warning(self._prefix(f"Invalid magic code entered. Attempts left: {state.attempts}"))
                await context.send_activity(
                    MessageFactory.text(self.settings.messages.invalid_code_format.format(attempts=state.attempts))
                )
            return _status_for(state)

        log.debug(self._prefix("Code format verified"))
        flow = transition(flow, CodeAccepted(code=code))
        return await self._redeem_code(context, storage, active, flow, code)

    async def _redeem_code(
        self, context: TurnContext, storage: GuardStorage, active: ActiveGuard, flow: FlowPending, code: str
    ) -> GuardRegisterStatus:
        activity = context.activity
        response = await self._user_token_client.get_token_or_sign_in_resource(
            activity.from_property.id,
            self.settings.name,
            activity.channel_id,
            TurnContext.get_conversation_reference(activity),
            activity.relates_to,
            code,
        )
        token = response.token_response.token if response.token_response else None
        if token:
            await self._answer_invoke(context, 200)
            await self._advance(storage, active, flow, TokenAcquired(token=token))
            return await self._complete(context, token)

        await self._answer_invoke(context, 404)
        state = await self._advance(storage, active, flow, CodeRejected())
        if isinstance(state, FlowFailed):
            await self._attempts_exhausted(context, state)
            return _status_for(state)

        # The stored trigger activity is kept so the original route still runs after the retry
        log.warning(self._prefix(f"The token service rejected the magic code. Attempts left: {state.attempts}"))
        await context.send_activity(
            MessageFactory.text(self.settings.messages.invalid_code.format(code=code, attempts=state.attempts))
        )
        await context.send_activity(MessageFactory.attachment(self._oauth_card(response.sign_in_resource)))
        return _status_for(state)

    async def _attempts_exhausted(self, context: TurnContext, state: FlowFailed) -> None:
        log.warning(self._prefix("Maximum sign-in attempts exceeded"))
        await context.send_activity(
            MessageFactory.text(self.settings.messages.max_attempts_exceeded.format(max_attempts=self.settings.max_attempts))
        )
        await _maybe_await(self._on_failure and self._on_failure(context, state.reason))

    async def _complete(self, context: TurnContext, token: str, notify: bool = True) -> GuardRegisterStatus:
        if self._is_exchangeable(token):
            return await self._handle_obo(context, token, notify)

        data = self._set_context(context, token)
        log.debug(self._prefix("Successfully acquired token"))
        if notify:
            await _maybe_await(self._on_success and self._on_success(context, data))
        return GuardRegisterStatus.APPROVED

    # --- Helpers ---

    async def _is_cancellation_requested(self, context: TurnContext) -> bool:
        trigger = self.settings.cancel_trigger
        if not trigger:
            return False
        text = context.activity.text or ""
        if isinstance(trigger, re.Pattern):
            return trigger.search(text) is not None
        if isinstance(trigger, str):
            return text.lower() == trigger.lower()
        return bool(await _maybe_await(trigger(context)))

    @staticmethod
    def _is_exchangeable(token: Optional[str]) -> bool:
        """True when the token's audience is an ``api://`` app, i.e. it must go through on-behalf-of."""
        if not token or not isinstance(token, str):
            return False
        try:
            claims = jwt.get_unverified_claims(token)
        except JWTError:
            return False
        audience = claims.get("aud")
        if isinstance(audience, list):
            audience = audience[0] if audience else None
        return isinstance(audience, str) and audience.startswith("api://")

    async def _handle_obo(self, context: TurnContext, token: str, notify: bool) -> GuardRegisterStatus:
        scopes = self.settings.scopes
        if not scopes:
            raise AuthConfigurationError(self._prefix("Cannot perform on-behalf-of token exchange without scopes setting"))
        if self._auth_provider is None:
            raise AuthConfigurationError(self._prefix("Cannot perform on-behalf-of token exchange without an auth provider"))

        try:
            auth_config = load_auth_config_from_env(self.settings.cnx_prefix) if self.settings.cnx_prefix else self._auth_config
            new_token = await self._auth_provider.acquire_token_on_behalf_of(auth_config, scopes, token)
        except Exception as e:
            reason = f"Failed to exchange on-behalf-of token: {e}"
            log.error(self._prefix(reason), exc_info=True)
            await _maybe_await(self._on_failure and self._on_failure(context, reason))
            return GuardRegisterStatus.REJECTED

        log.debug(self._prefix("Successfully acquired on-behalf-of token"))
        data = self._set_context(context, new_token)
        if notify:
            await _maybe_await(self._on_success and self._on_success(context, data))
        return GuardRegisterStatus.APPROVED

    def _oauth_card(self, sign_in_resource):
        link = sign_in_resource.sign_in_link if sign_in_resource else None
        exchange = sign_in_resource.token_exchange_resource if sign_in_resource else None
        card = OAuthCard(
            text=self.settings.text,
            connection_name=self.settings.name,
            buttons=[CardAction(type=ActionTypes.signin, title=self.settings.title, text=self.settings.text, value=link)],
            token_exchange_resource=exchange.model_dump(by_alias=True, exclude_none=True) if exchange else None,
        )
        return CardFactory.oauth_card(card)

    def _exchange_failure_body(self, value, reason: str):
        return TokenExchangeInvokeResponse(
            id=getattr(value, "id", None),
            connection_name=self.settings.name,
            failure_detail=reason,
        ).to_body()

    async def _answer_invoke(self, context: TurnContext, status: int, body: Any = None) -> None:
        """Sign-in invokes need a synchronous answer; plain messages don't."""
        if activity_type(context.activity) != ActivityTypes.invoke.value or INVOKE_RESPONSE_KEY in context.turn_state:
            return
        await context.send_activity(
            Activity(type=INVOKE_RESPONSE_ACTIVITY_TYPE, value=InvokeResponse(status=status, body=body))
        )

    def _set_context(self, context: TurnContext, token: str) -> AuthorizationGuardContext:
        data = AuthorizationGuardContext(token=token)
        context.turn_state[self._key] = data
        return data

    def _prefix(self, message: str) -> str:
        return f"[guard:{self.id}] {message}"
