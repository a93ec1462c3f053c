import asyncio

import pytest

from reveal_chat.errors import TerminalError, ValidationError
from reveal_chat.models import (
    AIProviderConfig,
    AppConfig,
    ContextMessage,
    ErrorKind,
    Role,
    RoomContext,
)
from reveal_chat.services.model_service import ModelService


class FakeClient:
    def __init__(self, reply: str = "reply"):
        self.reply = reply
        self.generate_calls: list[dict] = []
        self.stream_calls: list[dict] = []

    def generate(self, **kwargs):
        self.generate_calls.append(kwargs)
        return self.reply

    def generate_stream(self, **kwargs):
        self.stream_calls.append(kwargs)
        for piece in ("re", "ply"):
            kwargs["on_token"](piece)
        return self.reply


def _context(model: str = "gpt-4o") -> RoomContext:
    return RoomContext(
        room_id="r1",
        model=model,
        messages=[ContextMessage(role=Role.USER, content="Hello")],
        estimated_tokens=6,
    )


def _service(streaming: bool = False, openai_key: str = "sk-test"):
    config = AppConfig(
        providers={
            "openai": AIProviderConfig(api_key=openai_key, streaming=streaming),
            "gemini": AIProviderConfig(api_key="g-test"),
        }
    )
    clients = {"openai": FakeClient("from openai"), "gemini": FakeClient("from gemini")}
    return ModelService(config, clients, post_json=lambda *_args: {}), clients


def test_provider_routing():
    service, _clients = _service()

    assert service.provider_for_model("gpt-3.5-turbo") == "openai"
    assert service.provider_for_model("o3-mini") == "openai"
    assert service.provider_for_model("gemini-2.5-pro") == "gemini"
    with pytest.raises(ValidationError):
        service.provider_for_model("llama-3")


def test_complete_sends_context_payload():
    service, clients = _service()

    model = "gemini-2.5-flash"
    reply = asyncio.run(service.complete(_context(model), model))

    assert reply == "from gemini"
    call = clients["gemini"].generate_calls[0]
    assert call["api_key"] == "g-test"
    assert call["model"] == "gemini-2.5-flash"
    assert call["messages"] == [{"role": "user", "content": "Hello"}]
    assert clients["openai"].generate_calls == []


def test_missing_api_key_is_terminal():
    service, clients = _service(openai_key="  ")

    with pytest.raises(TerminalError) as exc_info:
        asyncio.run(service.complete(_context(), "gpt-4o"))

    assert exc_info.value.kind == ErrorKind.AUTHORIZATION
    assert clients["openai"].generate_calls == []


def test_streaming_used_only_when_enabled_and_requested():
    service, clients = _service(streaming=True)
    tokens: list[str] = []

    reply = asyncio.run(service.complete(_context(), "gpt-4o", on_token=tokens.append))

    assert reply == "from openai"
    assert tokens == ["re", "ply"]
    assert len(clients["openai"].stream_calls) == 1
    assert clients["openai"].generate_calls == []

    asyncio.run(service.complete(_context(), "gpt-4o"))
    assert len(clients["openai"].generate_calls) == 1


def test_streaming_disabled_falls_back_to_generate():
    service, clients = _service(streaming=False)

    asyncio.run(service.complete(_context(), "gpt-4o", on_token=lambda _t: None))

    assert clients["openai"].stream_calls == []
    assert len(clients["openai"].generate_calls) == 1
