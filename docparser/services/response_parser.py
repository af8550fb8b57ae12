# docparser/services/response_parser.py
from __future__ import annotations

import json
import re
from typing import Any, Dict, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from docparser.shared.errors import ParseError

M = TypeVar("M", bound=BaseModel)

_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?```$", re.DOTALL)


def _json_or_none(s: Union[str, bytes]) -> Any:
    try:
        return json.loads(s)
    except (TypeError, ValueError):
        return None


def strip_fence(content: str) -> str:
    """Remove one surrounding ```json ... ``` fence if present."""
    content = content.strip()
    m = _FENCE_RE.match(content)
    return m.group(1).strip() if m else content


def extract_content(body: Union[str, bytes]) -> str:
    """choices[0].message.content of a chat-completions envelope."""
    envelope = _json_or_none(body)
    if not isinstance(envelope, dict):
        raise ParseError("LLM envelope is not a JSON object")

    err = envelope.get("error")
    if err:
        msg = err.get("message") if isinstance(err, dict) else str(err)
        raise ParseError(f"LLM returned an error: {msg}")

    choices = envelope.get("choices") or []
    if not choices:
        raise ParseError("LLM response has no choices")

    choice = choices[0] if isinstance(choices, list) else None
    if not isinstance(choice, dict):
        raise ParseError("LLM response choice is not an object")
    message = choice.get("message") or {}
    if not isinstance(message, dict):
        raise ParseError("LLM response message is not an object")
    content = message.get("content")
    if isinstance(content, list):
        # some providers return content parts
        content = "".join(p.get("text", "") for p in content if isinstance(p, dict))
    if not content or not str(content).strip():
        raise ParseError("LLM response content is empty")
    return strip_fence(str(content))


def content_json(body: Union[str, bytes]) -> Any:
    content = extract_content(body)
    data = _json_or_none(content)
    if data is None:
        raise ParseError("LLM content is not valid JSON")
    return data


def parse_as(body: Union[str, bytes], model: Type[M]) -> M:
    data = content_json(body)
    if not isinstance(data, dict):
        raise ParseError(f"Expected a JSON object for {model.__name__}")
    return validate_as(data, model)


def validate_as(data: Dict[str, Any], model: Type[M]) -> M:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ParseError(f"LLM JSON does not match {model.__name__}: {e.error_count()} error(s)") from e
