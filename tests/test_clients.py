"""Unit tests for willow/intake/clients.py — HTTP mocking with respx."""
import asyncio
import json

import httpx
import pytest
import respx
from willow.errors import PersistenceError, TransportError
from willow.intake.clients import CareCircleClient, ConversationClient
from willow.intake.stream_reader import read_stream

BASE = "http://willow.test/api/v1"


@pytest.fixture
def conversation(mock_config):
    return ConversationClient.from_config(mock_config)


@pytest.fixture
def care_circle(mock_config):
    return CareCircleClient.from_config(mock_config)


# ============================================================
# ConversationClient.stream_reply
# ============================================================

class TestStreamReply:
    @respx.mock
    @pytest.mark.asyncio
    async def test_streams_reply_bytes(self, conversation):
        route = respx.post(f"{BASE}/ai/onboarding").mock(
            return_value=httpx.Response(200, content="Hello, I'm Willow ☕".encode("utf-8"))
        )
        messages = [{"role": "user", "content": "Hi"}]
        async with conversation.stream_reply(messages) as chunks:
            text = await read_stream(chunks, lambda _: None, asyncio.Event())
        assert text == "Hello, I'm Willow ☕"

        request = route.calls[0].request
        assert json.loads(request.content) == {"messages": messages}
        assert request.headers["Authorization"] == "Bearer user-token"

    @respx.mock
    @pytest.mark.asyncio
    async def test_non_200_raises_transport_error(self, conversation):
        respx.post(f"{BASE}/ai/onboarding").mock(
            return_value=httpx.Response(500, json={"error": "AI service unavailable"})
        )
        with pytest.raises(TransportError):
            async with conversation.stream_reply([]) as chunks:
                await read_stream(chunks, lambda _: None, asyncio.Event())

    @respx.mock
    @pytest.mark.asyncio
    async def test_connect_error_raises_transport_error(self, conversation):
        respx.post(f"{BASE}/ai/onboarding").mock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(TransportError):
            async with conversation.stream_reply([]):
                pass

    @respx.mock
    @pytest.mark.asyncio
    async def test_no_token_no_auth_header(self):
        route = respx.post(f"{BASE}/ai/onboarding").mock(return_value=httpx.Response(200, content=b"ok"))
        client = ConversationClient(BASE, access_token="")
        async with client.stream_reply([]) as chunks:
            await read_stream(chunks, lambda _: None, asyncio.Event())
        assert "Authorization" not in route.calls[0].request.headers


# ============================================================
# ConversationClient.extract
# ============================================================

class TestExtract:
    @respx.mock
    @pytest.mark.asyncio
    async def test_returns_directive(self, conversation):
        respx.post(f"{BASE}/ai/extract").mock(return_value=httpx.Response(200, json={
            "extracted": {"recipient_name": "Margaret", "age": 82, "family_members": ["Ana"]},
        }))
        directive = await conversation.extract([{"role": "user", "content": "Margaret"}])
        assert directive.identity_name == "Margaret"
        assert directive.age == 82
        assert directive.helpers == ["Ana"]

    @respx.mock
    @pytest.mark.asyncio
    async def test_missing_object_returns_none(self, conversation):
        respx.post(f"{BASE}/ai/extract").mock(return_value=httpx.Response(200, json={"extracted": None}))
        assert await conversation.extract([{"role": "user", "content": "x"}]) is None

    @respx.mock
    @pytest.mark.asyncio
    async def test_invalid_schema_returns_none(self, conversation):
        respx.post(f"{BASE}/ai/extract").mock(return_value=httpx.Response(200, json={
            "extracted": {"age": "eighty-ish"},
        }))
        assert await conversation.extract([{"role": "user", "content": "x"}]) is None

    @respx.mock
    @pytest.mark.asyncio
    async def test_server_error_raises_transport_error(self, conversation):
        respx.post(f"{BASE}/ai/extract").mock(return_value=httpx.Response(500, json={"error": "Failed to extract data"}))
        with pytest.raises(TransportError):
            await conversation.extract([{"role": "user", "content": "x"}])


# ============================================================
# CareCircleClient
# ============================================================

class TestCareCircleClient:
    @respx.mock
    @pytest.mark.asyncio
    async def test_create_recipient_returns_id(self, care_circle):
        route = respx.post(f"{BASE}/circle/create").mock(
            return_value=httpx.Response(201, json={"recipient": {"id": 42, "full_name": "Margaret"}})
        )
        recipient_id = await care_circle.create_recipient({"full_name": "Margaret", "city": None})
        assert recipient_id == "42"
        assert json.loads(route.calls[0].request.content) == {"full_name": "Margaret", "city": None}
        assert route.calls[0].request.headers["Authorization"] == "Bearer user-token"

    @respx.mock
    @pytest.mark.asyncio
    async def test_create_error_status_raises_persistence_error(self, care_circle):
        respx.post(f"{BASE}/circle/create").mock(return_value=httpx.Response(400, json={"error": "bad"}))
        with pytest.raises(PersistenceError) as exc_info:
            await care_circle.create_recipient({"full_name": "Margaret"})
        assert exc_info.value.status_code == 400

    @respx.mock
    @pytest.mark.asyncio
    async def test_create_without_id_raises_persistence_error(self, care_circle):
        respx.post(f"{BASE}/circle/create").mock(return_value=httpx.Response(200, json={"ok": True}))
        with pytest.raises(PersistenceError):
            await care_circle.create_recipient({"full_name": "Margaret"})

    @respx.mock
    @pytest.mark.asyncio
    async def test_network_error_raises_persistence_error(self, care_circle):
        respx.post(f"{BASE}/circle/create").mock(side_effect=httpx.ConnectTimeout("slow"))
        with pytest.raises(PersistenceError):
            await care_circle.create_recipient({"full_name": "Margaret"})

    @respx.mock
    @pytest.mark.asyncio
    async def test_patch_scoped_to_recipient(self, care_circle):
        route = respx.patch(f"{BASE}/circle/recipient").mock(return_value=httpx.Response(200, json={}))
        await care_circle.patch_recipient("42", {"city": "Austin"})
        assert json.loads(route.calls[0].request.content) == {"recipient_id": "42", "city": "Austin"}

    @respx.mock
    @pytest.mark.asyncio
    async def test_create_medication(self, care_circle):
        route = respx.post(f"{BASE}/medications").mock(return_value=httpx.Response(201, json={}))
        await care_circle.create_medication("42", "metformin 500mg daily")
        assert json.loads(route.calls[0].request.content) == {
            "recipient_id": "42", "name": "metformin 500mg daily",
        }
