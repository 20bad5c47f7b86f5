"""
Service-to-service tokens for the agent (client credentials) and the
on-behalf-of exchange, through MSAL.
"""
import asyncio
import logging
import os
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

import msal
from pydantic import BaseModel, Field

log = logging.getLogger(__name__)

DEFAULT_AUTHORITY_ENDPOINT = "https://login.microsoftonline.com"


class AuthConfigurationError(Exception):
    """Raised for missing or inconsistent authentication settings."""
    pass


class AuthConfiguration(BaseModel):
    client_id: Optional[str] = Field(None, description="App registration id of the agent.")
    client_secret: Optional[str] = None
    tenant_id: Optional[str] = None
    authority_endpoint: str = DEFAULT_AUTHORITY_ENDPOINT

    @property
    def authority(self) -> str:
        return f"{self.authority_endpoint.rstrip('/')}/{self.tenant_id or 'botframework.com'}"


def load_auth_config_from_env(prefix: str = "") -> AuthConfiguration:
    """
    Build an AuthConfiguration from ``{prefix}_clientId`` style variables.

    Args:
        prefix: Connection prefix, e.g. ``graph`` for ``graph_clientId``.

    Raises:
        AuthConfigurationError: if ``{prefix}_clientId`` is not set.
    """
    key = (lambda name: f"{prefix}_{name}") if prefix else (lambda name: name)
    client_id = os.environ.get(key("clientId"))
    if not client_id:
        raise AuthConfigurationError(f"{key('clientId')} is required in the environment.")
    return AuthConfiguration(
        client_id=client_id,
        client_secret=os.environ.get(key("clientSecret")),
        tenant_id=os.environ.get(key("tenantId")),
        authority_endpoint=os.environ.get(key("authorityEndpoint")) or DEFAULT_AUTHORITY_ENDPOINT,
    )


class AuthProvider(ABC):
    @abstractmethod
    async def get_access_token(self, auth_config: AuthConfiguration, scope: str) -> str:
        raise NotImplementedError()

    @abstractmethod
    async def acquire_token_on_behalf_of(
        self, auth_config: AuthConfiguration, scopes: List[str], user_token: str
    ) -> str:
        raise NotImplementedError()


class MsalAuthProvider(AuthProvider):
    """AuthProvider backed by ``msal.ConfidentialClientApplication``."""

    def __init__(self):
        self._apps: Dict[Tuple[str, str], msal.ConfidentialClientApplication] = {}

    def _get_app(self, auth_config: AuthConfiguration) -> msal.ConfidentialClientApplication:
        if not auth_config.client_id:
            raise AuthConfigurationError("client_id is required to acquire tokens.")
        if not auth_config.client_secret:
            raise AuthConfigurationError(f"client_secret is required for client '{auth_config.client_id}'.")

        cache_key = (auth_config.client_id, auth_config.authority)
        app = self._apps.get(cache_key)
        if app is None:
            log.debug(f"Creating MSAL client for '{auth_config.client_id}' at {auth_config.authority}")
            app = msal.ConfidentialClientApplication(
                auth_config.client_id,
                client_credential=auth_config.client_secret,
                authority=auth_config.authority,
            )
            self._apps[cache_key] = app
        return app

    @staticmethod
    def _token_from_result(result: Optional[dict], what: str) -> str:
        if not result or "access_token" not in result:
            error = (result or {}).get("error_description") or (result or {}).get("error") or "no result"
            raise RuntimeError(f"Failed to acquire {what}: {error}")
        return result["access_token"]

    async def get_access_token(self, auth_config: AuthConfiguration, scope: str) -> str:
        app = self._get_app(auth_config)
        scopes = [scope if scope.endswith("/.default") else f"{scope.rstrip('/')}/.default"]
        result = await asyncio.to_thread(app.acquire_token_for_client, scopes=scopes)
        return self._token_from_result(result, "access token")

    async def acquire_token_on_behalf_of(
        self, auth_config: AuthConfiguration, scopes: List[str], user_token: str
    ) -> str:
        app = self._get_app(auth_config)
        result = await asyncio.to_thread(
            app.acquire_token_on_behalf_of, user_assertion=user_token, scopes=list(scopes)
        )
        return self._token_from_result(result, "on-behalf-of token")
