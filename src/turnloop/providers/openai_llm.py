"""
OpenAI-compatible chat-completions adapter (OpenAI and Groq).

Provides:
- Streaming text deltas
- Tool calling (fragments accumulated per index, emitted once complete)
- Token usage on the final result
- Optional startup model validation
"""

from __future__ import annotations

import json
import uuid
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
import openai
import structlog
from openai import AsyncOpenAI

from src.turnloop.config import ConfigError, get_config
from src.turnloop.errors import ProviderError
from src.turnloop.providers.base import LLMProvider
from src.turnloop.providers.types import LLMDelta, LLMResult, TextDelta, TokenUsage, ToolCallRequest

logger = structlog.get_logger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
GROQ_BASE_URL = "https://api.groq.com/openai/v1"


def _parse_arguments(raw: str) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


class OpenAICompatibleLLM(LLMProvider):
    """
    Streaming chat-completions client.

    Uses the OpenAI SDK for both vendors; Groq is reached through its
    OpenAI-compatible base URL.
    """

    def __init__(
        self,
        config: Optional[Any] = None,
        *,
        provider: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.config = config or get_config()
        self.name = provider or self.config.llm_provider
        self.model = self.config.llm_model

        if self.name == "groq":
            self.base_url = GROQ_BASE_URL
            self.api_key = self.config.groq_api_key
        else:
            self.base_url = OPENAI_BASE_URL
            self.api_key = self.config.openai_api_key

        self._client = client or AsyncOpenAI(api_key=self.api_key, base_url=self.base_url)

    async def validate_model(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> bool:
        """
        Check that the configured model exists.

        Calls GET {base_url}/models.

        Raises:
            ConfigError: If the API rejects the key or the model is not listed
        """
        logger.info("Validating LLM model", provider=self.name, model=self.model)

        async with httpx.AsyncClient(transport=transport) as client:
            try:
                response = await client.get(
                    f"{self.base_url}/models",
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    timeout=10.0,
                )
            except httpx.RequestError as e:
                logger.error("Failed to connect to LLM API", provider=self.name, error=str(e))
                raise ConfigError(f"Failed to connect to {self.name} API: {e}") from e

        if response.status_code != 200:
            logger.error(
                "Failed to fetch models",
                provider=self.name,
                status_code=response.status_code,
                response=response.text[:200],
            )
            raise ConfigError(
                f"Failed to validate LLM model. API returned status {response.status_code}. "
                "Check your API key."
            )

        model_ids = [m.get("id") for m in response.json().get("data", [])]
        if self.model not in model_ids:
            available = ", ".join(sorted(str(m) for m in model_ids)[:10])
            logger.error("LLM model not found", requested_model=self.model, available_models=available)
            raise ConfigError(
                f"LLM_MODEL '{self.model}' not found in available models.\n"
                f"Available models include: {available}"
            )

        logger.info("LLM model validated successfully", model=self.model)
        return True

    async def generate(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> AsyncIterator[LLMDelta]:
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "stream": True,
            "max_tokens": self.config.llm_max_tokens,
            "temperature": self.config.llm_temperature,
        }
        if self.name == "openai":
            kwargs["stream_options"] = {"include_usage": True}
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        try:
            stream = await self._client.chat.completions.create(**kwargs)
        except openai.OpenAIError as e:
            logger.error("LLM request failed", provider=self.name, error=str(e))
            raise ProviderError(str(e), phase="llm", provider=self.name) from e

        text_parts: List[str] = []
        pending: Dict[int, Dict[str, str]] = {}
        usage = TokenUsage()
        finish_reason: Optional[str] = None

        try:
            async for chunk in stream:
                if getattr(chunk, "usage", None):
                    usage = TokenUsage(
                        prompt_tokens=chunk.usage.prompt_tokens or 0,
                        completion_tokens=chunk.usage.completion_tokens or 0,
                    )
                if not chunk.choices:
                    continue

                choice = chunk.choices[0]
                delta = choice.delta
                if delta is not None and delta.content:
                    text_parts.append(delta.content)
                    yield TextDelta(text=delta.content)

                for fragment in (delta.tool_calls if delta is not None else None) or []:
                    slot = pending.setdefault(fragment.index, {"id": "", "name": "", "arguments": ""})
                    if fragment.id:
                        slot["id"] = fragment.id
                    if fragment.function is not None:
                        if fragment.function.name:
                            slot["name"] += fragment.function.name
                        if fragment.function.arguments:
                            slot["arguments"] += fragment.function.arguments

                if choice.finish_reason:
                    finish_reason = choice.finish_reason
        except openai.OpenAIError as e:
            logger.error("LLM stream failed", provider=self.name, error=str(e))
            raise ProviderError(str(e), phase="llm", provider=self.name) from e
        finally:
            await stream.close()

        for index in sorted(pending):
            slot = pending[index]
            yield ToolCallRequest(
                id=slot["id"] or f"call_{uuid.uuid4().hex[:12]}",
                name=slot["name"],
                arguments=_parse_arguments(slot["arguments"]),
                raw_arguments=slot["arguments"],
            )

        yield LLMResult(text="".join(text_parts), usage=usage, finish_reason=finish_reason)

    async def close(self) -> None:
        await self._client.close()
