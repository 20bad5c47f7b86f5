"""
Shared fakes for the test suite: an adapter that records what the agent sends,
a scriptable user-token client and activity builders.
"""
import os
import sys
from typing import Any, Dict, List, Optional

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from botbuilder.schema import (  # type: ignore
    Activity,
    ChannelAccount,
    ConversationAccount,
    ResourceResponse,
)

from bot_core.storage import MemoryStorage
from bot_core.turn_context import TurnContext, activity_type
from user_auth.models import (
    SignInResource,
    TokenOrSignInResourceResponse,
    TokenResponse,
    TokenStatus,
)
from user_auth.user_token_client import UserTokenClient

SERVICE_URL = "https://service.example.com/"
SIGN_IN_LINK = "https://token.example.com/signin?code=abc"


def make_activity(
    text: Optional[str] = None,
    type: str = "message",
    channel_id: str = "msteams",
    conversation_id: str = "conversation-1",
    user_id: str = "user-1",
    **kwargs,
) -> Activity:
    return Activity(
        type=type,
        text=text,
        id=kwargs.pop("id", "incoming-1"),
        channel_id=channel_id,
        service_url=kwargs.pop("service_url", SERVICE_URL),
        conversation=ConversationAccount(id=conversation_id),
        from_property=ChannelAccount(id=user_id, name="Test User"),
        recipient=ChannelAccount(id="agent-1", name="Agent"),
        **kwargs,
    )


def make_invoke(name: str, value: Any = None, **kwargs) -> Activity:
    return make_activity(type="invoke", name=name, value=value, **kwargs)


class FakeAdapter:
    """Records outgoing activities instead of calling a connector."""

    def __init__(self, user_token_client=None):
        self.sent: List[Activity] = []
        self.updated: List[Activity] = []
        self.deleted: List[Any] = []
        self.user_token_client = user_token_client
        self.auth_provider = None
        self.auth_config = None
        self.on_turn_error = None
        self._next_id = 0

    async def send_activities(self, context: TurnContext, activities: List[Activity]) -> List[ResourceResponse]:
        responses = []
        for activity in activities:
            self._next_id += 1
            self.sent.append(activity)
            responses.append(ResourceResponse(id=f"activity-{self._next_id}"))
        return responses

    async def update_activity(self, context: TurnContext, activity: Activity) -> ResourceResponse:
        self.updated.append(activity)
        return ResourceResponse(id=activity.id)

    async def delete_activity(self, context: TurnContext, reference) -> None:
        self.deleted.append(reference)

    async def continue_conversation(self, reference, logic) -> None:
        activity = TurnContext.apply_conversation_reference(
            Activity(type="event", name="ContinueConversation"), reference, is_incoming=True
        )
        await logic(TurnContext(self, activity))

    def sent_of_type(self, kind: str) -> List[Activity]:
        return [a for a in self.sent if activity_type(a) == kind]

    @property
    def texts(self) -> List[str]:
        return [a.text for a in self.sent_of_type("message")]


class FakeUserTokenClient(UserTokenClient):
    """
    ``tokens`` maps a magic code to the token the service would return for it;
    the empty code stands for a token the user already has. A redeemed code signs
    the user in to that connection, so later lookups without a code find it.
    """

    def __init__(self, tokens: Optional[Dict[str, str]] = None, exchange_token: Optional[str] = None):
        self.tokens: Dict[str, str] = dict(tokens or {})
        self.exchange_result = exchange_token
        self.calls: List[tuple] = []
        self.signed_out: List[tuple] = []
        self.signed_in: Dict[str, str] = {}

    async def get_user_token(self, connection_name, channel_id, user_id, code=None) -> TokenResponse:
        self.calls.append(("get_user_token", connection_name, code))
        return TokenResponse(
            connection_name=connection_name, channel_id=channel_id, token=self._lookup(connection_name, code)
        )

    async def sign_out(self, user_id, connection_name, channel_id) -> None:
        self.signed_out.append((user_id, connection_name, channel_id))
        self.tokens.pop("", None)
        self.signed_in.pop(connection_name, None)

    async def get_sign_in_resource(self, connection_name, conversation, relates_to=None) -> SignInResource:
        return SignInResource(sign_in_link=SIGN_IN_LINK)

    async def exchange_token(self, user_id, connection_name, channel_id, exchange_request) -> TokenResponse:
        self.calls.append(("exchange_token", connection_name, exchange_request))
        return TokenResponse(connection_name=connection_name, channel_id=channel_id, token=self.exchange_result)

    async def get_token_or_sign_in_resource(
        self,
        user_id,
        connection_name,
        channel_id,
        conversation,
        relates_to=None,
        code="",
        final_redirect="",
        fwd_url="",
    ) -> TokenOrSignInResourceResponse:
        self.calls.append(("get_token_or_sign_in_resource", connection_name, code))
        token = self._lookup(connection_name, code)
        if token:
            return TokenOrSignInResourceResponse(
                token_response=TokenResponse(connection_name=connection_name, channel_id=channel_id, token=token)
            )
        return TokenOrSignInResourceResponse(sign_in_resource=SignInResource(sign_in_link=SIGN_IN_LINK))

    async def get_token_status(self, user_id, channel_id, include=None) -> List[TokenStatus]:
        return []

    def _lookup(self, connection_name, code) -> Optional[str]:
        if code:
            token = self.tokens.get(code)
            if token:
                self.signed_in[connection_name] = token
            return token
        return self.signed_in.get(connection_name) or self.tokens.get("")


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def token_client():
    return FakeUserTokenClient()
