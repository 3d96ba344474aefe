"""
LLM client abstraction supporting OpenAI (and OpenAI-compatible gateways) and Anthropic.
Provides async completion with structured JSON output support.
"""

import json
from typing import Optional, Dict, Any
from enum import Enum

import anthropic
import openai
from openai import AsyncOpenAI
from anthropic import AsyncAnthropic

from adapt.shared.config import settings
from adapt.shared.exceptions import AdaptError


class LLMProvider(str, Enum):
    """Supported LLM providers."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


class LLMError(AdaptError):
    """Base error for LLM operations."""
    code = "LLM_ERROR"


class LLMResponseFormatError(LLMError):
    """Raised when a completion is not parseable JSON."""
    code = "LLM_RESPONSE_FORMAT"


def is_transient_error(error: Exception) -> bool:
    """
    Whether a provider error is worth retrying.

    Connection failures and timeouts are, as are HTTP 429 and 5xx. Other
    statuses (auth, bad request, not found) fail the same way every time.
    """
    if isinstance(error, (openai.APIConnectionError, anthropic.APIConnectionError)):
        return True
    status_code = getattr(error, "status_code", None)
    if isinstance(status_code, int):
        return status_code == 429 or status_code >= 500
    return False


def parse_json_response(response_text: str) -> Dict[str, Any]:
    """
    Parse a JSON object out of a model completion.

    Strips markdown code fences, preamble before the first brace and
    trailing text after the last brace.
    """
    cleaned = response_text.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    cleaned = cleaned.strip()

    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end < start:
        raise LLMResponseFormatError(f"No JSON object in response: {response_text[:200]}")
    cleaned = cleaned[start:end + 1]

    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise LLMResponseFormatError(
            f"Failed to parse JSON response: {str(e)}\nResponse: {response_text[:200]}"
        ) from e

    if not isinstance(parsed, dict):
        raise LLMResponseFormatError("JSON response is not an object")
    return parsed


class LLMClient:
    """Unified LLM client supporting multiple providers."""

    def __init__(
        self,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None
    ):
        self.provider = provider or settings.llm.provider
        self.model = model or settings.llm.default_model
        self.temperature = temperature if temperature is not None else settings.llm.temperature
        self.max_tokens = max_tokens or settings.llm.max_tokens

        # Retries are owned by the caller, so SDK-level retries are disabled
        if self.provider == LLMProvider.OPENAI:
            api_key = api_key or settings.llm.openai_api_key
            if not api_key:
                raise LLMError("OpenAI API key not configured")
            self.client = AsyncOpenAI(
                api_key=api_key,
                base_url=base_url or settings.llm.base_url,
                max_retries=0,
            )
        elif self.provider == LLMProvider.ANTHROPIC:
            api_key = api_key or settings.llm.anthropic_api_key
            if not api_key:
                raise LLMError("Anthropic API key not configured")
            self.client = AsyncAnthropic(api_key=api_key, max_retries=0)
        else:
            raise LLMError(f"Unsupported provider: {self.provider}")

    async def get_completion(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        json_mode: bool = False,
        **kwargs
    ) -> str:
        """
        Get text completion from LLM.

        Args:
            prompt: User prompt
            system_prompt: Optional system prompt
            model: Override default model
            temperature: Override default temperature
            max_tokens: Override default max_tokens
            json_mode: Ask the provider for a JSON object response
            **kwargs: Additional provider-specific parameters

        Returns:
            Completion text
        """
        model = model or self.model
        temperature = temperature if temperature is not None else self.temperature
        max_tokens = max_tokens or self.max_tokens

        try:
            if self.provider == LLMProvider.OPENAI:
                return await self._openai_completion(
                    prompt=prompt,
                    system_prompt=system_prompt,
                    model=model,
                    temperature=temperature,
                    max_tokens=max_tokens,
                    json_mode=json_mode,
                    **kwargs
                )
            return await self._anthropic_completion(
                prompt=prompt,
                system_prompt=system_prompt,
                model=model,
                temperature=temperature,
                max_tokens=max_tokens,
                json_mode=json_mode,
                **kwargs
            )
        except Exception as e:
            raise LLMError(
                f"LLM completion failed: {str(e)}",
                status_code=getattr(e, "status_code", None),
                transient=is_transient_error(e)
            ) from e

    async def _openai_completion(
        self,
        prompt: str,
        system_prompt: Optional[str],
        model: str,
        temperature: float,
        max_tokens: int,
        json_mode: bool,
        **kwargs
    ) -> str:
        """OpenAI-specific completion."""
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        completion_kwargs = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            **kwargs
        }
        if json_mode:
            completion_kwargs["response_format"] = {"type": "json_object"}

        response = await self.client.chat.completions.create(**completion_kwargs)
        return response.choices[0].message.content or ""

    async def _anthropic_completion(
        self,
        prompt: str,
        system_prompt: Optional[str],
        model: str,
        temperature: float,
        max_tokens: int,
        json_mode: bool,
        **kwargs
    ) -> str:
        """Anthropic-specific completion."""
        completion_kwargs = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            **kwargs
        }

        system = system_prompt or ""
        if json_mode:
            system += "\n\nRespond with a single valid JSON object and nothing else."
        if system:
            completion_kwargs["system"] = system.strip()

        completion_kwargs["messages"] = [{"role": "user", "content": prompt}]

        response = await self.client.messages.create(**completion_kwargs)
        return response.content[0].text
