"""Client for the user-token service (OAuth connections configured on the bot)."""
import base64
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from botbuilder.schema import ConversationReference  # type: ignore

from bot_core.connector_client import AuthenticatedHttpClient, ConnectorError
from core_logic.constants import BOT_FRAMEWORK_SCOPE
from user_auth.models import (
    SignInResource,
    TokenOrSignInResourceResponse,
    TokenResponse,
    TokenStatus,
)

log = logging.getLogger(__name__)

DEFAULT_TOKEN_SERVICE_URL = "https://api.botframework.com"


def _serialize(value) -> Optional[Dict[str, Any]]:
    if value is None:
        return None
    return value.serialize() if hasattr(value, "serialize") else value


def encode_state(connection_name: str, conversation, relates_to, app_id: Optional[str]) -> str:
    """Base64 JSON state the token service hands back to the channel after sign-in."""
    state = {
        "connectionName": connection_name,
        "conversation": _serialize(conversation),
        "relatesTo": _serialize(relates_to),
        "msAppId": app_id,
    }
    return base64.b64encode(json.dumps(state).encode("utf-8")).decode("ascii")


class UserTokenClient(ABC):
    @abstractmethod
    async def get_user_token(
        self, connection_name: str, channel_id: str, user_id: str, code: str = None
    ) -> TokenResponse:
        raise NotImplementedError()

    @abstractmethod
    async def sign_out(self, user_id: str, connection_name: str, channel_id: str) -> None:
        raise NotImplementedError()

    @abstractmethod
    async def get_sign_in_resource(
        self, connection_name: str, conversation: ConversationReference, relates_to=None
    ) -> SignInResource:
        raise NotImplementedError()

    @abstractmethod
    async def exchange_token(
        self, user_id: str, connection_name: str, channel_id: str, exchange_request: Dict[str, Any]
    ) -> TokenResponse:
        raise NotImplementedError()

    @abstractmethod
    async def get_token_or_sign_in_resource(
        self,
        user_id: str,
        connection_name: str,
        channel_id: str,
        conversation: ConversationReference,
        relates_to=None,
        code: str = "",
        final_redirect: str = "",
        fwd_url: str = "",
    ) -> TokenOrSignInResourceResponse:
        raise NotImplementedError()

    @abstractmethod
    async def get_token_status(
        self, user_id: str, channel_id: str, include: str = None
    ) -> List[TokenStatus]:
        raise NotImplementedError()

    async def close(self) -> None:
        pass


class RestUserTokenClient(AuthenticatedHttpClient, UserTokenClient):
    """
    aiohttp client for the token service endpoints under ``/api/usertoken`` and
    ``/api/botsignin``.
    """

    def __init__(self, auth_provider=None, auth_config=None, base_url: str = DEFAULT_TOKEN_SERVICE_URL, **kwargs):
        super().__init__(base_url, auth_provider, auth_config, scope=BOT_FRAMEWORK_SCOPE, **kwargs)

    @property
    def app_id(self) -> Optional[str]:
        return getattr(self._auth_config, "client_id", None)

    async def get_user_token(
        self, connection_name: str, channel_id: str, user_id: str, code: str = None
    ) -> TokenResponse:
        params = {"connectionName": connection_name, "channelId": channel_id, "userId": user_id, "code": code}
        data = await self._request("GET", "/api/usertoken/GetToken", params=params, allow_not_found=True)
        if data is None:
            return TokenResponse(connection_name=connection_name, channel_id=channel_id)
        return TokenResponse.model_validate(data)

    async def sign_out(self, user_id: str, connection_name: str, channel_id: str) -> None:
        params = {"userId": user_id, "connectionName": connection_name, "channelId": channel_id}
        await self._request("DELETE", "/api/usertoken/SignOut", params=params)
        log.info(f"Signed out user '{user_id}' from connection '{connection_name}' on '{channel_id}'")

    async def get_sign_in_resource(
        self, connection_name: str, conversation: ConversationReference, relates_to=None
    ) -> SignInResource:
        state = encode_state(connection_name, conversation, relates_to, self.app_id)
        data = await self._request("GET", "/api/botsignin/GetSignInResource", params={"state": state})
        return SignInResource.model_validate(data or {})

    async def exchange_token(
        self, user_id: str, connection_name: str, channel_id: str, exchange_request: Dict[str, Any]
    ) -> TokenResponse:
        params = {"userId": user_id, "connectionName": connection_name, "channelId": channel_id}
        try:
            data = await self._request("POST", "/api/usertoken/exchange", params=params, body=exchange_request)
        except ConnectorError as e:
            log.warning(f"Token exchange for connection '{connection_name}' failed with status {e.status}")
            return TokenResponse(connection_name=connection_name, channel_id=channel_id)
        return TokenResponse.model_validate(data or {})

    async def get_token_or_sign_in_resource(
        self,
        user_id: str,
        connection_name: str,
        channel_id: str,
        conversation: ConversationReference,
        relates_to=None,
        code: str = "",
        final_redirect: str = "",
        fwd_url: str = "",
    ) -> TokenOrSignInResourceResponse:
        params = {
            "userId": user_id,
            "connectionName": connection_name,
            "channelId": channel_id,
            "state": encode_state(connection_name, conversation, relates_to, self.app_id),
            "code": code,
            "finalRedirect": final_redirect,
            "fwdUrl": fwd_url,
        }
        data = await self._request("GET", "/api/usertoken/GetTokenOrSignInResource", params=params)
        return TokenOrSignInResourceResponse.model_validate(data or {})

    async def get_token_status(
        self, user_id: str, channel_id: str, include: str = None
    ) -> List[TokenStatus]:
        params = {"userId": user_id, "channelId": channel_id, "include": include}
        data = await self._request("GET", "/api/usertoken/GetTokenStatus", params=params)
        return [TokenStatus.model_validate(item) for item in (data or [])]
