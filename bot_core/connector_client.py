# File: bot_core/connector_client.py
"""
Outbound connector: the ``/v3/conversations`` REST surface of the channel service.
"""
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from urllib.parse import quote

import aiohttp
from botbuilder.schema import (  # type: ignore
    Activity,
    ConversationParameters,
    ConversationResourceResponse,
    ResourceResponse,
)

from core_logic.constants import BOT_FRAMEWORK_SCOPE

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30


class ConnectorError(Exception):
    """A connector or token service call returned a non-2xx status."""

    def __init__(self, status: int, body: Any, message: str = None):
        super().__init__(message or f"Connector request failed with status {status}: {body}")
        self.status = status
        self.body = body


class ConnectorClient(ABC):
    @abstractmethod
    async def send_to_conversation(self, conversation_id: str, activity: Activity) -> ResourceResponse:
        raise NotImplementedError()

    @abstractmethod
    async def reply_to_activity(
        self, conversation_id: str, activity_id: str, activity: Activity
    ) -> ResourceResponse:
        raise NotImplementedError()

    @abstractmethod
    async def update_activity(
        self, conversation_id: str, activity_id: str, activity: Activity
    ) -> ResourceResponse:
        raise NotImplementedError()

    @abstractmethod
    async def delete_activity(self, conversation_id: str, activity_id: str) -> None:
        raise NotImplementedError()

    @abstractmethod
    async def create_conversation(
        self, parameters: ConversationParameters
    ) -> ConversationResourceResponse:
        raise NotImplementedError()

    async def close(self) -> None:
        pass


class AuthenticatedHttpClient:
    """
    Shared plumbing for the REST clients: a lazily created aiohttp session and a
    bearer token requested from the auth provider for every call.
    """

    def __init__(
        self,
        base_url: str,
        auth_provider=None,
        auth_config=None,
        scope: str = BOT_FRAMEWORK_SCOPE,
        session: Optional[aiohttp.ClientSession] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self._base_url = base_url.rstrip("/")
        self._auth_provider = auth_provider
        self._auth_config = auth_config
        self._scope = scope
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self._auth_provider and self._auth_config and getattr(self._auth_config, "client_id", None):
            token = await self._auth_provider.get_access_token(self._auth_config, self._scope)
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Any = None,
        allow_not_found: bool = False,
    ) -> Any:
        url = f"{self._base_url}{path}"
        query = {k: str(v) for k, v in (params or {}).items() if v is not None}
        data = json.dumps(body) if body is not None else None

        log.debug(f"{method} {url}")
        async with self._get_session().request(
            method, url, params=query, data=data, headers=await self._headers()
        ) as response:
            text = await response.text()
            if allow_not_found and response.status == 404:
                return None
            if response.status >= 400:
                log.warning(f"{method} {path} failed with status {response.status}")
                raise ConnectorError(response.status, text)
            if not text:
                return {}
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                return {"raw": text}

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None


class RestConnectorClient(AuthenticatedHttpClient, ConnectorClient):
    """aiohttp implementation of the connector for one service URL."""

    def __init__(self, service_url: str, auth_provider=None, auth_config=None, **kwargs):
        super().__init__(service_url, auth_provider, auth_config, **kwargs)

    @staticmethod
    def _conversation_path(conversation_id: str, activity_id: str = None) -> str:
        path = f"/v3/conversations/{quote(conversation_id, safe='')}/activities"
        if activity_id:
            path = f"{path}/{quote(activity_id, safe='')}"
        return path

    async def send_to_conversation(self, conversation_id: str, activity: Activity) -> ResourceResponse:
        data = await self._request("POST", self._conversation_path(conversation_id), body=activity.serialize())
        return ResourceResponse(id=(data or {}).get("id"))

    async def reply_to_activity(
        self, conversation_id: str, activity_id: str, activity: Activity
    ) -> ResourceResponse:
        data = await self._request(
            "POST", self._conversation_path(conversation_id, activity_id), body=activity.serialize()
        )
        return ResourceResponse(id=(data or {}).get("id"))

    async def update_activity(
        self, conversation_id: str, activity_id: str, activity: Activity
    ) -> ResourceResponse:
        data = await self._request(
            "PUT", self._conversation_path(conversation_id, activity_id), body=activity.serialize()
        )
        return ResourceResponse(id=(data or {}).get("id") or activity_id)

    async def delete_activity(self, conversation_id: str, activity_id: str) -> None:
        await self._request("DELETE", self._conversation_path(conversation_id, activity_id))

    async def create_conversation(
        self, parameters: ConversationParameters
    ) -> ConversationResourceResponse:
        data = await self._request("POST", "/v3/conversations", body=parameters.serialize()) or {}
        return ConversationResourceResponse(
            activity_id=data.get("activityId"),
            service_url=data.get("serviceUrl"),
            id=data.get("id"),
        )


class RestConnectorClientFactory:
    """Creates one connector client per service URL, sharing the auth settings."""

    def __init__(self, auth_provider=None, auth_config=None):
        self._auth_provider = auth_provider
        self._auth_config = auth_config

    def __call__(self, service_url: str) -> RestConnectorClient:
        return RestConnectorClient(service_url, self._auth_provider, self._auth_config)
