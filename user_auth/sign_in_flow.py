"""
Sign-in flow state machine.

``transition(state, event)`` is pure: it never mutates its inputs and returns
the input state unchanged when an event does not apply to it.
"""
import re
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict

MAGIC_CODE_PATTERN = re.compile(r"\d{6}")


def is_valid_magic_code(code: Optional[str]) -> bool:
    return bool(code) and MAGIC_CODE_PATTERN.fullmatch(code) is not None


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# --- States ---

class NoActiveFlow(_Frozen):
    status: Literal["none"] = "none"


class FlowPending(_Frozen):
    status: Literal["pending"] = "pending"
    attempts: int
    expires_at: float
    conversation_id: Optional[str] = None


class FlowSucceeded(_Frozen):
    status: Literal["success"] = "success"
    token: str


class FlowFailed(_Frozen):
    status: Literal["failure"] = "failure"
    reason: str


FlowState = Union[NoActiveFlow, FlowPending, FlowSucceeded, FlowFailed]


# --- Events ---

class FlowBegun(_Frozen):
    kind: Literal["begun"] = "begun"
    attempts: int
    expires_at: float
    conversation_id: Optional[str] = None


class CodeRejected(_Frozen):
    """A submission that is not a 6-digit code."""
    kind: Literal["code_rejected"] = "code_rejected"


class CodeAccepted(_Frozen):
    """The code has a valid format; the flow stays pending until the token service redeems it."""
    kind: Literal["code_accepted"] = "code_accepted"
    code: str


class TokenAcquired(_Frozen):
    kind: Literal["token_acquired"] = "token_acquired"
    token: str


class Cancelled(_Frozen):
    kind: Literal["cancelled"] = "cancelled"


class ConversationChanged(_Frozen):
    kind: Literal["conversation_changed"] = "conversation_changed"


class Expired(_Frozen):
    kind: Literal["expired"] = "expired"


class ExchangeFailed(_Frozen):
    kind: Literal["exchange_failed"] = "exchange_failed"
    reason: str


FlowEvent = Union[
    FlowBegun, CodeRejected, CodeAccepted, TokenAcquired,
    Cancelled, ConversationChanged, Expired, ExchangeFailed,
]

MAX_ATTEMPTS_REASON = "max_attempts"
CANCELLED_REASON = "cancelled"


def transition(state: FlowState, event: FlowEvent) -> FlowState:
    if isinstance(event, FlowBegun):
        # A new sign-in card replaces whatever flow was there
        return FlowPending(
            attempts=event.attempts,
            expires_at=event.expires_at,
            conversation_id=event.conversation_id,
        )

    if isinstance(event, TokenAcquired):
        if isinstance(state, (NoActiveFlow, FlowPending)):
            return FlowSucceeded(token=event.token)
        return state

    if isinstance(event, ExchangeFailed):
        if isinstance(state, (NoActiveFlow, FlowPending)):
            return FlowFailed(reason=event.reason)
        return state

    if not isinstance(state, FlowPending):
        return state

    if isinstance(event, CodeRejected):
        remaining = state.attempts - 1
        if remaining <= 0:
            return FlowFailed(reason=MAX_ATTEMPTS_REASON)
        return state.model_copy(update={"attempts": remaining})

    if isinstance(event, CodeAccepted):
        return state

    if isinstance(event, Cancelled):
        return FlowFailed(reason=CANCELLED_REASON)

    if isinstance(event, (ConversationChanged, Expired)):
        return NoActiveFlow()

    return state
