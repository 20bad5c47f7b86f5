"""
HTTP host: the messages endpoint and the health check.
"""
import os
from unittest.mock import AsyncMock, Mock, patch

import pytest
from aiohttp.test_utils import TestClient, TestServer
from botbuilder.schema import ResourceResponse  # type: ignore

from app import create_agent, create_app
from bot_core.cloud_adapter import CloudAdapter
from bot_core.storage import MemoryStorage
from config import Config
from tests.conftest import SERVICE_URL

MESSAGE = {
    "type": "message",
    "id": "incoming-1",
    "text": "hi",
    "channelId": "msteams",
    "serviceUrl": SERVICE_URL,
    "conversation": {"id": "conversation-1"},
    "from": {"id": "user-1"},
    "recipient": {"id": "agent-1"},
}


@pytest.fixture
def config():
    with patch.dict(os.environ, {"APP_ENV": "development"}, clear=True):
        yield Config()


def make_host(config):
    connector = Mock()
    connector.reply_to_activity = AsyncMock(return_value=ResourceResponse(id="reply-1"))
    connector.send_to_conversation = AsyncMock(return_value=ResourceResponse(id="sent-1"))
    connector.close = AsyncMock()
    adapter = CloudAdapter(Mock(return_value=connector))
    agent = create_agent(config, adapter, MemoryStorage())
    return create_app(config, adapter, agent), connector


@pytest.mark.asyncio
async def test_message_is_echoed_with_turn_count(config):
    server_app, connector = make_host(config)

    async with TestClient(TestServer(server_app)) as client:
        first = await client.post("/api/messages", json=MESSAGE)
        second = await client.post("/api/messages", json=dict(MESSAGE, text="again"))

    assert first.status == 200
    assert second.status == 200
    texts = [call.args[2].text for call in connector.reply_to_activity.await_args_list]
    assert texts == ["[1] you said: hi", "[2] you said: again"]


@pytest.mark.asyncio
async def test_expect_replies_are_returned_in_body(config):
    server_app, connector = make_host(config)

    async with TestClient(TestServer(server_app)) as client:
        response = await client.post("/api/messages", json=dict(MESSAGE, deliveryMode="expectReplies"))
        body = await response.json()

    assert response.status == 200
    assert body["activities"][0]["text"] == "[1] you said: hi"
    connector.reply_to_activity.assert_not_awaited()


@pytest.mark.asyncio
async def test_unhandled_invoke_returns_not_implemented(config):
    server_app, _ = make_host(config)

    async with TestClient(TestServer(server_app)) as client:
        response = await client.post("/api/messages", json=dict(MESSAGE, type="invoke", name="custom/action"))

    assert response.status == 501


@pytest.mark.asyncio
async def test_rejects_non_json(config):
    server_app, _ = make_host(config)

    async with TestClient(TestServer(server_app)) as client:
        response = await client.post("/api/messages", data="hello", headers={"Content-Type": "text/plain"})

    assert response.status == 415


@pytest.mark.asyncio
async def test_rejects_invalid_json(config):
    server_app, _ = make_host(config)

    async with TestClient(TestServer(server_app)) as client:
        response = await client.post(
            "/api/messages", data="{not json", headers={"Content-Type": "application/json"}
        )

    assert response.status == 400


@pytest.mark.asyncio
async def test_health_check(config):
    server_app, _ = make_host(config)

    async with TestClient(TestServer(server_app)) as client:
        response = await client.get("/api/healthz")
        body = await response.json()

    assert response.status == 200
    assert body["status"] == "OK"
    assert body["environment"] == "development"
