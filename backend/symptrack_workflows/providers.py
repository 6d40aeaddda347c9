from __future__ import annotations

import json
import logging
import os
from typing import Any, Protocol

import httpx

from symptrack_memory.errors import SymptrackError

logger = logging.getLogger(__name__)

_OPENAI_API_BASE = "https://api.openai.com/v1"


class ProviderError(SymptrackError):
    pass


class TextGenerator(Protocol):
    def generate(self, system_prompt: str, user_message: str, context: dict[str, Any] | None = None) -> str:
        ...


def _provider_error_message(response: httpx.Response) -> str:
    message = response.text.strip()
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict):
            msg = err.get("message")
            if isinstance(msg, str) and msg.strip():
                return msg.strip()
        msg = payload.get("message")
        if isinstance(msg, str) and msg.strip():
            return msg.strip()
    return message or f"HTTP {response.status_code}"


def extract_json_object(raw_text: str) -> dict[str, Any] | None:
    """Pull the first JSON object out of a model reply, tolerating prose or code fences around it."""
    text = (raw_text or "").strip()
    if not text:
        return None
    try:
        payload = json.loads(text)
        if isinstance(payload, dict):
            return payload
    except json.JSONDecodeError:
        pass

    for start_idx in [idx for idx, char in enumerate(text) if char == "{"]:
        depth = 0
        for end_idx in range(start_idx, len(text)):
            char = text[end_idx]
            if char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
            if depth == 0:
                candidate = text[start_idx : end_idx + 1]
                try:
                    payload = json.loads(candidate)
                    if isinstance(payload, dict):
                        return payload
                except json.JSONDecodeError:
                    break
    return None


def _coerce_completion_text(response_json: dict[str, Any]) -> str:
    choices = response_json.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    message = choices[0].get("message", {})
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                text_value = item.get("text")
                if isinstance(text_value, str):
                    parts.append(text_value)
        return "\n".join(parts)
    return ""


class OpenAIChatClient:
    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: str = _OPENAI_API_BASE,
        timeout_seconds: float = 25.0,
        temperature: float = 0.3,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature

    def generate(self, system_prompt: str, user_message: str, context: dict[str, Any] | None = None) -> str:
        messages: list[dict[str, str]] = [{"role": "system", "content": system_prompt}]
        if context:
            messages.append(
                {
                    "role": "system",
                    "content": "Patient working memory JSON:\n" + json.dumps(context, ensure_ascii=True, default=str),
                }
            )
        messages.append({"role": "user", "content": user_message.strip()[:4000]})
        payload = {"model": self.model, "temperature": self.temperature, "messages": messages}
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        try:
            with httpx.Client(timeout=httpx.Timeout(self.timeout_seconds, connect=8.0)) as client:
                response = client.post(f"{self.base_url}/chat/completions", headers=headers, json=payload)
        except httpx.HTTPError as exc:
            raise ProviderError(f"Chat provider request failed: {exc}") from exc
        if response.status_code >= 400:
            raise ProviderError(_provider_error_message(response))
        text = _coerce_completion_text(response.json()).strip()
        if not text:
            raise ProviderError("Chat provider returned an empty completion.")
        return text


class OpenAIEmbeddingClient:
    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: str = _OPENAI_API_BASE,
        timeout_seconds: float = 25.0,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def embed(self, text: str) -> list[float]:
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        payload = {"model": self.model, "input": text[:8000]}
        try:
            with httpx.Client(timeout=httpx.Timeout(self.timeout_seconds, connect=8.0)) as client:
                response = client.post(f"{self.base_url}/embeddings", headers=headers, json=payload)
        except httpx.HTTPError as exc:
            raise ProviderError(f"Embedding provider request failed: {exc}") from exc
        if response.status_code >= 400:
            raise ProviderError(_provider_error_message(response))
        data = response.json().get("data")
        if not isinstance(data, list) or not data or not isinstance(data[0].get("embedding"), list):
            raise ProviderError("Embedding provider returned no vector.")
        return [float(value) for value in data[0]["embedding"]]


def _api_key() -> str:
    return (os.getenv("OPENAI_API_KEY") or "").strip()


def _api_base() -> str:
    return (os.getenv("OPENAI_API_BASE_URL") or _OPENAI_API_BASE).rstrip("/")


def _timeout() -> float:
    return float(os.getenv("SYMPTRACK_PROVIDER_TIMEOUT_SECONDS", "25"))


def chat_client_from_env() -> OpenAIChatClient | None:
    api_key = _api_key()
    if not api_key:
        logger.info("text generation unavailable: OPENAI_API_KEY is not set, using templated replies")
        return None
    return OpenAIChatClient(
        api_key=api_key,
        model=(os.getenv("SYMPTRACK_CHAT_MODEL") or "gpt-4o-mini").strip(),
        base_url=_api_base(),
        timeout_seconds=_timeout(),
    )


def embedding_client_from_env() -> OpenAIEmbeddingClient | None:
    api_key = _api_key()
    if not api_key:
        logger.info("semantic retrieval disabled: OPENAI_API_KEY is not set")
        return None
    return OpenAIEmbeddingClient(
        api_key=api_key,
        model=(os.getenv("SYMPTRACK_EMBEDDING_MODEL") or "text-embedding-3-small").strip(),
        base_url=_api_base(),
        timeout_seconds=_timeout(),
    )
