"""Payload models for sign-in invokes and the user-token service."""
import logging
from typing import Any, Dict, Literal, Optional, Union

from botbuilder.schema import Activity  # type: ignore
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from core_logic.constants import SIGNIN_FAILURE, SIGNIN_TOKEN_EXCHANGE, SIGNIN_VERIFY_STATE

log = logging.getLogger(__name__)


class _WireModel(BaseModel):
    """Wire payloads use camelCase; accept either spelling."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# --- Invoke values (tagged by activity name) ---

class VerifyStateValue(_WireModel):
    """Value of a ``signin/verifyState`` invoke: the magic code typed or relayed by the channel."""
    kind: Literal["verifyState"] = "verifyState"
    state: Optional[str] = None


class TokenExchangeValue(_WireModel):
    """Value of a ``signin/tokenExchange`` invoke (SSO)."""
    kind: Literal["tokenExchange"] = "tokenExchange"
    id: Optional[str] = None
    connection_name: Optional[str] = Field(None, alias="connectionName")
    token: Optional[str] = None


class SignInFailureValue(_WireModel):
    """Value of a ``signin/failure`` invoke."""
    kind: Literal["signInFailure"] = "signInFailure"
    code: Optional[str] = None
    message: Optional[str] = None


class OpaqueValue(_WireModel):
    """Any activity value we don't model; kept as received."""
    kind: Literal["opaque"] = "opaque"
    raw: Any = None


InvokeValue = Union[VerifyStateValue, TokenExchangeValue, SignInFailureValue, OpaqueValue]

_INVOKE_VALUE_MODELS = {
    SIGNIN_VERIFY_STATE: VerifyStateValue,
    SIGNIN_TOKEN_EXCHANGE: TokenExchangeValue,
    SIGNIN_FAILURE: SignInFailureValue,
}


def parse_invoke_value(activity: Activity) -> InvokeValue:
    """Typed view of ``activity.value``; never raises, falls back to OpaqueValue."""
    value = getattr(activity, "value", None)
    model = _INVOKE_VALUE_MODELS.get(getattr(activity, "name", None))
    if model is None or not isinstance(value, dict):
        return OpaqueValue(raw=value)
    try:
        return model.model_validate(value)
    except ValidationError as e:
        log.warning(f"Malformed '{activity.name}' value, treating as opaque: {e.error_count()} error(s)")
        return OpaqueValue(raw=value)


# --- User-token service models ---

class TokenResponse(_WireModel):
    channel_id: Optional[str] = Field(None, alias="channelId")
    connection_name: Optional[str] = Field(None, alias="connectionName")
    token: Optional[str] = None
    expiration: Optional[str] = None


class TokenExchangeResource(_WireModel):
    id: Optional[str] = None
    uri: Optional[str] = None
    provider_id: Optional[str] = Field(None, alias="providerId")


class TokenPostResource(_WireModel):
    sas_url: Optional[str] = Field(None, alias="sasUrl")


class SignInResource(_WireModel):
    sign_in_link: Optional[str] = Field(None, alias="signInLink")
    token_exchange_resource: Optional[TokenExchangeResource] = Field(None, alias="tokenExchangeResource")
    token_post_resource: Optional[TokenPostResource] = Field(None, alias="tokenPostResource")


class TokenOrSignInResourceResponse(_WireModel):
    token_response: Optional[TokenResponse] = Field(None, alias="tokenResponse")
    sign_in_resource: Optional[SignInResource] = Field(None, alias="signInResource")


class TokenStatus(_WireModel):
    channel_id: Optional[str] = Field(None, alias="channelId")
    connection_name: Optional[str] = Field(None, alias="connectionName")
    has_token: bool = Field(False, alias="hasToken")
    service_provider_display_name: Optional[str] = Field(None, alias="serviceProviderDisplayName")


class TokenExchangeInvokeResponse(_WireModel):
    """Body of the invoke response answering a failed ``signin/tokenExchange``."""
    id: Optional[str] = None
    connection_name: Optional[str] = Field(None, alias="connectionName")
    failure_detail: Optional[str] = Field(None, alias="failureDetail")

    def to_body(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)
