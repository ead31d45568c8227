from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from openai import APIError, BadRequestError, OpenAI, OpenAIError

from ..config import OpenAIConfig
from ..errors import ModelInvocationError, SchemaUnsupportedError


LOGGER = logging.getLogger("productflow_agent.openai")

# A message is ``{"role": ..., "content": str | [parts]}`` where parts are
# ``{"type": "text" | "image_url" | "file_url", ...}``.
Message = Dict[str, Any]

_SCHEMA_REJECTION_MARKERS = ("response_format", "json_schema")


class ModelInvoker(Protocol):
    """Anything that can send chat messages to a language model."""

    def invoke(
        self,
        messages: List[Message],
        max_tokens: Optional[int] = None,
        response_format: Optional[Dict[str, Any]] = None,
    ) -> Any:  # pragma: no cover - protocol definition
        ...


@dataclass
class OpenAIClient:
    """Thin wrapper around an OpenAI-compatible chat completions endpoint."""

    model: str
    temperature: float
    max_output_tokens: Optional[int]
    api_key: Optional[str] = None
    api_key_env: str = "OPENAI_API_KEY"
    base_url: Optional[str] = None
    timeout: float = 120.0
    _client: Optional[Any] = field(default=None, init=False, repr=False)
    _api_key: Optional[str] = field(default=None, init=False, repr=False)

    def invoke(
        self,
        messages: List[Message],
        max_tokens: Optional[int] = None,
        response_format: Optional[Dict[str, Any]] = None,
    ) -> Any:
        api_key = self.api_key or os.getenv(self.api_key_env)
        if not api_key:
            raise ModelInvocationError(f"{self.api_key_env} is not set and no api_key was configured")

        client = self._ensure_client(api_key)
        request_params: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
        }
        limit = max_tokens or self.max_output_tokens
        if limit is not None:
            request_params["max_tokens"] = limit
        if response_format is not None:
            request_params["response_format"] = response_format

        try:
            LOGGER.debug("Invoking chat completions with model %s (%d messages)", self.model, len(messages))
            return client.chat.completions.create(**request_params)
        except BadRequestError as exc:
            message = str(exc)
            if response_format is not None and any(marker in message for marker in _SCHEMA_REJECTION_MARKERS):
                raise SchemaUnsupportedError(message, status_code=exc.status_code) from exc
            raise ModelInvocationError(message, status_code=exc.status_code) from exc
        except APIError as exc:
            raise ModelInvocationError(str(exc), status_code=getattr(exc, "status_code", None)) from exc
        except OpenAIError as exc:
            raise ModelInvocationError(str(exc)) from exc

    def _ensure_client(self, api_key: str):
        if self._client is not None and self._api_key == api_key:
            return self._client
        base_url = self.base_url or os.getenv("OPENAI_BASE_URL")
        kwargs: Dict[str, Any] = {"api_key": api_key}
        if base_url:
            kwargs["base_url"] = base_url
        client = OpenAI(**kwargs)
        if self.timeout:
            client = client.with_options(timeout=self.timeout)
        self._client = client
        self._api_key = api_key
        return self._client


def read_choice_text(response: Any) -> str:
    """Return the text of the first choice, joining typed text parts."""

    if response is None:
        return ""
    choices = _get(response, "choices") or []
    if not choices:
        return ""
    message = _get(choices[0], "message")
    if message is None:
        return ""
    if isinstance(message, str):
        return message.strip()
    content = _get(message, "content")
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        chunks = [_text_from_part(part) for part in content]
        return "\n".join(chunk for chunk in chunks if chunk).strip()
    return ""


def _text_from_part(part: Any) -> str:
    if isinstance(part, str):
        return part
    if _get(part, "type") == "text":
        text = _get(part, "text")
        if isinstance(text, str):
            return text
    return ""


def _get(obj: Any, key: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


class OpenAIClientFactory:
    """Factory for creating `OpenAIClient` instances from configuration."""

    @staticmethod
    def create(config: OpenAIConfig) -> OpenAIClient:
        return OpenAIClient(
            model=config.model,
            temperature=config.temperature,
            max_output_tokens=config.max_output_tokens,
            api_key=config.api_key or None,
            base_url=config.base_url,
            timeout=config.timeout,
        )
