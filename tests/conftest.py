"""Shared fixtures for the Willow test suite."""
import asyncio
import json
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock

import pytest
from willow.config import WillowConfig, ApiKeysConfig, ModelsConfig, IntakeConfig
from willow.llm.client import LLMClient


@pytest.fixture
def mock_config():
    """Minimal WillowConfig with dummy API keys for unit tests."""
    return WillowConfig(
        api_keys=ApiKeysConfig(
            anthropic="sk-ant-test-key",
            openai="sk-openai-test-key",
        ),
        models=ModelsConfig(
            conversation="claude-sonnet-4-5-20250929",
            extraction="claude-sonnet-4-5-20250929",
        ),
        intake=IntakeConfig(
            api_base_url="http://willow.test/api/v1",
            access_token="user-token",
        ),
    )


@pytest.fixture
def llm_client(mock_config):
    """LLMClient instance with dummy config."""
    return LLMClient(mock_config)


def reply_with(text: str, **fields) -> str:
    """A model reply: visible text followed by an <extract> block."""
    payload = {
        "recipient_name": None, "age": None, "city": None, "state": None,
        "medications": [], "conditions": [], "allergies": [], "family_members": [],
    }
    payload.update(fields)
    return f"{text}\n<extract>{json.dumps(payload)}</extract>"


class FakeConversation:
    """Scripted conversation service.

    Each ``stream_reply`` call consumes the next scripted reply (a string, or
    an exception to raise). A reply is delivered in two byte chunks; when
    ``gates`` holds an event for that call index, the second chunk waits on it.
    """

    def __init__(self, replies=None, extracted=None):
        self.replies = list(replies or [])
        self.requests: list[list[dict]] = []
        self.gates: dict[int, asyncio.Event] = {}
        self.extract = AsyncMock(return_value=extracted)

    @asynccontextmanager
    async def stream_reply(self, messages):
        index = len(self.requests)
        self.requests.append(list(messages))
        reply = self.replies[index] if index < len(self.replies) else ""
        if isinstance(reply, BaseException):
            raise reply
        yield self._chunks(reply, self.gates.get(index))

    @staticmethod
    async def _chunks(reply: str, gate):
        data = reply.encode("utf-8")
        half = len(data) // 2
        yield data[:half]
        if gate is not None:
            await gate.wait()
        yield data[half:]


@pytest.fixture
def reply():
    return reply_with


@pytest.fixture
def fake_conversation_cls():
    return FakeConversation


@pytest.fixture
def backend():
    """Care circle backend double; creation returns 'rec-1'."""
    mock = AsyncMock()
    mock.create_recipient = AsyncMock(return_value="rec-1")
    mock.patch_recipient = AsyncMock(return_value=None)
    mock.create_medication = AsyncMock(return_value=None)
    return mock
