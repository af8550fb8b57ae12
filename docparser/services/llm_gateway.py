# docparser/services/llm_gateway.py
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Union

import httpx
from pydantic import BaseModel

from docparser.config import LLMSettings, ProviderSettings
from docparser.services.resilient_caller import RetryPolicy, ResilientCaller
from docparser.shared.errors import UnsupportedProvider

logger = logging.getLogger(__name__)

CHAT_COMPLETIONS = "/chat/completions"

# content is a plain string or a list of {type:text}/{type:image_url} parts
MessageContent = Union[str, List[Dict[str, Any]]]


class LlmRequest(BaseModel):
    model: str
    messages: List[Dict[str, Any]]
    temperature: float = 0.0
    json_mode: bool = True
    stream: bool = False
    max_tokens: Optional[int] = None

    def payload(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": self.model,
            "messages": self.messages,
            "temperature": self.temperature,
        }
        if self.json_mode:
            body["response_format"] = {"type": "json_object"}
        if self.stream:
            body["stream"] = True
        if self.max_tokens:
            body["max_tokens"] = self.max_tokens
        return body


class LlmResponse(BaseModel):
    status: int
    body: str
    provider: str = ""
    model: str = ""


def user_message(content: MessageContent) -> Dict[str, Any]:
    return {"role": "user", "content": content}


def system_message(content: str) -> Dict[str, Any]:
    return {"role": "system", "content": content}


def text_part(text: str) -> Dict[str, Any]:
    return {"type": "text", "text": text}


def image_part(url: str) -> Dict[str, Any]:
    return {"type": "image_url", "image_url": {"url": url}}


@dataclass(frozen=True)
class ProviderClient:
    provider_id: str
    caller: ResilientCaller
    api_key: str = ""

    def auth_headers(self) -> Dict[str, str]:
        if not self.api_key:
            return {}
        return {"Authorization": f"Bearer {self.api_key}"}

    async def execute(self, request: LlmRequest) -> LlmResponse:
        status, body = await self.caller.call(
            CHAT_COMPLETIONS,
            method="POST",
            headers={**self.auth_headers(), "Content-Type": "application/json"},
            body=request.payload(),
            streaming=request.stream,
        )
        if request.stream:
            # keep a single envelope shape for the parser
            body = json.dumps({"choices": [{"message": {"role": "assistant", "content": body}}]})
        return LlmResponse(status=status, body=body, provider=self.provider_id, model=request.model)


class ProviderRegistry(Mapping[str, ProviderClient]):
    """Read-only provider map, built once at startup."""

    def __init__(self, providers: Mapping[str, ProviderClient]):
        self._providers = MappingProxyType(dict(providers))

    def __getitem__(self, key: str) -> ProviderClient:
        return self._providers[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._providers)

    def __len__(self) -> int:
        return len(self._providers)


class LlmGateway:
    """Routes a typed request to a provider; never looks inside the content."""

    def __init__(self, registry: ProviderRegistry, default_provider: str = "openrouter"):
        self._registry = registry
        self.default_provider = default_provider

    @property
    def providers(self) -> List[str]:
        return sorted(self._registry)

    async def execute(self, provider_id: Optional[str], request: LlmRequest) -> LlmResponse:
        pid = provider_id or self.default_provider
        provider = self._registry.get(pid)
        if provider is None:
            raise UnsupportedProvider(pid)
        logger.debug("llm call provider=%s model=%s", pid, request.model)
        return await provider.execute(request)


# -------------------------- Factory --------------------------

def build_caller(name: str, conf: ProviderSettings, client: httpx.AsyncClient) -> ResilientCaller:
    return ResilientCaller(
        name,
        client,
        base_url=conf.base_url,
        timeout=conf.timeout,
        policy=RetryPolicy(
            max_retries=conf.retry_count,
            initial_interval=conf.retry_wait_time,
            max_interval=conf.retry_max_interval,
        ),
    )


def build_registry(llm: LLMSettings, client: httpx.AsyncClient) -> ProviderRegistry:
    providers: Dict[str, ProviderClient] = {
        "openrouter": ProviderClient(
            "openrouter", build_caller("openrouter", llm.openrouter, client), llm.openrouter.api_key
        ),
    }
    if llm.openai.api_key:
        providers["openai"] = ProviderClient(
            "openai", build_caller("openai", llm.openai, client), llm.openai.api_key
        )
    return ProviderRegistry(providers)
