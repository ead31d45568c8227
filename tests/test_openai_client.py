from __future__ import annotations

from types import SimpleNamespace

import httpx
import pytest
from openai import BadRequestError

from productflow_agent.config import OpenAIConfig
from productflow_agent.errors import ModelInvocationError, SchemaUnsupportedError
from productflow_agent.sdk.openai_client import OpenAIClient, OpenAIClientFactory, read_choice_text

from .fakes import chat_response


class _DummyCompletions:
    def __init__(self, client):
        self._client = client

    def create(self, **kwargs):
        self._client.last_kwargs = kwargs
        if self._client.error is not None:
            raise self._client.error
        return chat_response("stubbed response")


class _DummyClient:
    def __init__(self, error=None):
        self.chat = SimpleNamespace(completions=_DummyCompletions(self))
        self.last_kwargs = None
        self.error = error


def _bad_request(message: str) -> BadRequestError:
    request = httpx.Request("POST", "https://api.example.com/v1/chat/completions")
    return BadRequestError(message, response=httpx.Response(400, request=request), body=None)


def _client(monkeypatch, dummy: _DummyClient, **kwargs) -> OpenAIClient:
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    client = OpenAIClient(model="gpt-test", temperature=0.1, max_output_tokens=512, **kwargs)
    monkeypatch.setattr(client, "_ensure_client", lambda api_key: dummy)
    return client


def test_invoke_sends_messages_and_limits(monkeypatch):
    dummy = _DummyClient()
    client = _client(monkeypatch, dummy)
    messages = [{"role": "user", "content": "hello world"}]

    response = client.invoke(messages, max_tokens=64, response_format={"type": "json_object"})

    assert read_choice_text(response) == "stubbed response"
    assert dummy.last_kwargs == {
        "model": "gpt-test",
        "messages": messages,
        "temperature": 0.1,
        "max_tokens": 64,
        "response_format": {"type": "json_object"},
    }


def test_invoke_falls_back_to_configured_token_limit(monkeypatch):
    dummy = _DummyClient()
    client = _client(monkeypatch, dummy)

    client.invoke([{"role": "user", "content": "hi"}])

    assert dummy.last_kwargs["max_tokens"] == 512
    assert "response_format" not in dummy.last_kwargs


def test_missing_api_key_is_reported(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    client = OpenAIClient(model="gpt-test", temperature=0.1, max_output_tokens=None)

    with pytest.raises(ModelInvocationError, match="OPENAI_API_KEY"):
        client.invoke([{"role": "user", "content": "hi"}])


def test_schema_rejection_is_distinguished(monkeypatch):
    dummy = _DummyClient(error=_bad_request("response_format json_schema is not supported"))
    client = _client(monkeypatch, dummy)

    with pytest.raises(SchemaUnsupportedError) as excinfo:
        client.invoke([{"role": "user", "content": "hi"}], response_format={"type": "json_schema"})
    assert excinfo.value.status_code == 400


def test_other_bad_requests_are_invocation_errors(monkeypatch):
    dummy = _DummyClient(error=_bad_request("context length exceeded"))
    client = _client(monkeypatch, dummy)

    with pytest.raises(ModelInvocationError) as excinfo:
        client.invoke([{"role": "user", "content": "hi"}], response_format={"type": "json_schema"})
    assert not isinstance(excinfo.value, SchemaUnsupportedError)


def test_read_choice_text_handles_shapes():
    assert read_choice_text(None) == ""
    assert read_choice_text({"choices": []}) == ""
    assert read_choice_text({"choices": [{"message": {"content": "  plain  "}}]}) == "plain"
    parts = [{"type": "text", "text": "first"}, {"type": "image_url"}, "second"]
    assert read_choice_text({"choices": [{"message": {"content": parts}}]}) == "first\nsecond"
    assert read_choice_text(chat_response("object form")) == "object form"


def test_factory_maps_config():
    config = OpenAIConfig(api_key="sk-test", model="gpt-x", temperature=0.5, max_output_tokens=100, timeout=30)
    client = OpenAIClientFactory.create(config)

    assert client.model == "gpt-x"
    assert client.api_key == "sk-test"
    assert client.max_output_tokens == 100
    assert client.timeout == 30
