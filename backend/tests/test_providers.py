from __future__ import annotations

import json

import httpx
import pytest

from symptrack_workflows import ProviderError, chat_client_from_env, embedding_client_from_env
from symptrack_workflows.providers import OpenAIChatClient, OpenAIEmbeddingClient, extract_json_object


@pytest.fixture
def mock_http(monkeypatch):
    real_client = httpx.Client
    seen: list[httpx.Request] = []

    def _install(handler):
        def _record(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return handler(request)

        def _client(*args, **kwargs):
            kwargs["transport"] = httpx.MockTransport(_record)
            return real_client(*args, **kwargs)

        monkeypatch.setattr(httpx, "Client", _client)
        return seen

    return _install


def test_chat_client_sends_context_and_returns_text(mock_http):
    seen = mock_http(
        lambda request: httpx.Response(200, json={"choices": [{"message": {"content": " Noted. "}}]})
    )
    client = OpenAIChatClient(api_key="sk-test", model="gpt-test", base_url="https://llm.example/v1/")

    reply = client.generate("system", "I have a cough", {"phase": "gathering"})

    assert reply == "Noted."
    assert str(seen[0].url) == "https://llm.example/v1/chat/completions"
    body = json.loads(seen[0].content)
    assert body["model"] == "gpt-test"
    assert [item["role"] for item in body["messages"]] == ["system", "system", "user"]
    assert seen[0].headers["Authorization"] == "Bearer sk-test"


def test_chat_client_surfaces_provider_error_message(mock_http):
    mock_http(lambda request: httpx.Response(429, json={"error": {"message": "Rate limit reached"}}))
    client = OpenAIChatClient(api_key="sk-test", model="gpt-test")

    with pytest.raises(ProviderError, match="Rate limit reached"):
        client.generate("system", "hello")


def test_chat_client_rejects_empty_completion(mock_http):
    mock_http(lambda request: httpx.Response(200, json={"choices": []}))

    with pytest.raises(ProviderError):
        OpenAIChatClient(api_key="sk-test", model="gpt-test").generate("system", "hello")


def test_transport_failure_becomes_provider_error(mock_http):
    def _refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    mock_http(_refuse)

    with pytest.raises(ProviderError):
        OpenAIEmbeddingClient(api_key="sk-test", model="embed-test").embed("cough")


def test_embedding_client_returns_floats(mock_http):
    mock_http(lambda request: httpx.Response(200, json={"data": [{"embedding": [1, 0.5, 0]}]}))

    vector = OpenAIEmbeddingClient(api_key="sk-test", model="embed-test").embed("cough")

    assert vector == [1.0, 0.5, 0.0]


def test_clients_are_disabled_without_api_key(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "")

    assert chat_client_from_env() is None
    assert embedding_client_from_env() is None


def test_clients_read_models_from_env(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("SYMPTRACK_CHAT_MODEL", "chat-model")
    monkeypatch.setenv("SYMPTRACK_EMBEDDING_MODEL", "embed-model")

    assert chat_client_from_env().model == "chat-model"
    assert embedding_client_from_env().model == "embed-model"


@pytest.mark.parametrize(
    "raw, expected",
    [
        ('{"hypothesis": "Flu"}', {"hypothesis": "Flu"}),
        ('Sure!\n```json\n{"a": {"b": 1}}\n```', {"a": {"b": 1}}),
        ("no json here", None),
        ("", None),
    ],
)
def test_extract_json_object(raw, expected):
    assert extract_json_object(raw) == expected
