"""Structured (JSON) model calls: strict schema first, one JSON-only retry, brace fallback."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .errors import SchemaUnsupportedError, SchemaValidationError
from .sdk.openai_client import Message, ModelInvoker, read_choice_text

logger = logging.getLogger(__name__)

JSON_ONLY_INSTRUCTION = (
    "Return only one valid JSON object that matches the requested fields. "
    "Do not wrap it in Markdown fences and do not add any text before or after it."
)


@dataclass(frozen=True)
class JsonDecodeResult:
    """Outcome of decoding model text: either ``value`` or an ``error`` tag."""

    value: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    used_fallback: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class JsonContract:
    """Name and JSON schema sent as a strict ``json_schema`` response format."""

    name: str
    schema: Dict[str, Any]

    def response_format(self) -> Dict[str, Any]:
        return {
            "type": "json_schema",
            "json_schema": {"name": self.name, "strict": True, "schema": self.schema},
        }


def decode_json_object(text: str) -> JsonDecodeResult:
    """Decode *text* as a JSON object, falling back to the outermost ``{...}`` span."""

    stripped = (text or "").strip()
    if not stripped:
        return JsonDecodeResult(error="empty output")

    try:
        value = json.loads(stripped)
    except json.JSONDecodeError:
        pass
    else:
        if isinstance(value, dict):
            return JsonDecodeResult(value=value)

    start = stripped.find("{")
    end = stripped.rfind("}")
    if start == -1 or end <= start:
        return JsonDecodeResult(error="no JSON object found in output")
    try:
        value = json.loads(stripped[start : end + 1])
    except json.JSONDecodeError as exc:
        return JsonDecodeResult(error=f"invalid JSON object: {exc.msg}")
    if not isinstance(value, dict):
        return JsonDecodeResult(error="decoded JSON is not an object")
    return JsonDecodeResult(value=value, used_fallback=True)


class StructuredOutputValidator:
    """Wraps a model invoker for calls that must yield a JSON object."""

    def __init__(self, invoker: ModelInvoker, *, supports_json_schema: bool = True) -> None:
        self._invoker = invoker
        self._supports_json_schema = supports_json_schema

    def request(self, messages: List[Message], contract: JsonContract, max_tokens: Optional[int] = None) -> Dict[str, Any]:
        """
        Return the decoded JSON object for *messages*.

        The strict-schema call is tried first. A model that rejects the schema
        contract, or a response that does not decode, triggers exactly one
        retry with an explicit JSON-only instruction. Any other invocation
        error propagates unchanged.
        """

        first_text: Optional[str] = None
        if self._supports_json_schema:
            try:
                response = self._invoker.invoke(messages, max_tokens=max_tokens, response_format=contract.response_format())
            except SchemaUnsupportedError as exc:
                logger.info("Model rejected json_schema for %s, retrying with JSON-only instruction: %s", contract.name, exc)
            else:
                first_text = read_choice_text(response)
                decoded = decode_json_object(first_text)
                if decoded.ok:
                    return decoded.value
                logger.warning("Malformed %s response (%s); retrying once", contract.name, decoded.error)

        retry_messages = list(messages) + [{"role": "user", "content": JSON_ONLY_INSTRUCTION}]
        response = self._invoker.invoke(retry_messages, max_tokens=max_tokens, response_format=None)
        retry_text = read_choice_text(response)
        decoded = decode_json_object(retry_text)
        if decoded.ok:
            return decoded.value

        raise SchemaValidationError(
            f"{contract.name}: model output is not valid JSON after retry ({decoded.error})",
            contract=contract.name,
            raw_text=retry_text or first_text or "",
        )


__all__ = [
    "JSON_ONLY_INSTRUCTION",
    "JsonContract",
    "JsonDecodeResult",
    "StructuredOutputValidator",
    "decode_json_object",
]
