"""
AIGateway: the single timed, retried, validated and audited path to the model.
"""

import asyncio
import hashlib
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from adapt.core.grounding import GroundingSelection
from adapt.core.prompts import OUTPUT_SCHEMAS, PromptKind, PromptLibrary
from adapt.storage.store import TrainingStore
from adapt.shared.config import settings
from adapt.shared.exceptions import (
    AIError,
    AIInvalidOutputError,
    AITimeoutError,
    AIUpstreamError,
)
from adapt.shared.llm import LLMClient, LLMError, LLMResponseFormatError, parse_json_response
from adapt.shared.logging import get_logger, log_with_context

logger = get_logger(__name__)

PROMPT_LOG_CHARS = 5000
RESPONSE_LOG_CHARS = 3000


def hash_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


def sanitize_for_logging(text: str, max_length: int) -> str:
    """Redact credentials and cap length before text reaches the audit log."""
    sanitized = re.sub(r"Bearer\s+[\w\-.]+", "Bearer [REDACTED]", text, flags=re.IGNORECASE)
    sanitized = re.sub(r"api[_-]?key[\s:=]+[\w\-]+", "api_key=[REDACTED]", sanitized, flags=re.IGNORECASE)
    sanitized = re.sub(r"sk-[A-Za-z0-9\-_]{8,}", "sk-[REDACTED]", sanitized)
    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length] + "... [TRUNCATED]"
    return sanitized


@dataclass
class GenerationResult:
    """Validated model output plus call metadata."""
    output: BaseModel
    text: str
    latency_ms: int
    correlation_id: str
    attempts: int = 1
    fragment_ids: List[int] = field(default_factory=list)


class AIGateway:
    """Uniform interface to the text-generation service."""

    def __init__(
        self,
        store: Optional[TrainingStore] = None,
        llm: Optional[LLMClient] = None,
        prompts: Optional[PromptLibrary] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None
    ):
        self.store = store
        self._llm = llm
        self.prompts = prompts or PromptLibrary()
        self.timeout_seconds = settings.llm.timeout_seconds if timeout_seconds is None else timeout_seconds
        retries = settings.llm.max_retries if max_retries is None else max_retries
        self.max_retries = max(0, min(retries, 1))

    @property
    def provider_name(self) -> str:
        return settings.llm.provider

    @property
    def llm(self) -> LLMClient:
        if self._llm is None:
            try:
                self._llm = LLMClient()
            except LLMError as e:
                raise AIUpstreamError(f"LLM client unavailable: {e}", transient=False) from e
        return self._llm

    async def generate(
        self,
        prompt_kind: PromptKind,
        payload: Dict[str, Any],
        grounding: Optional[GroundingSelection] = None,
        course_id: Optional[int] = None,
        learner_id: Optional[str] = None
    ) -> GenerationResult:
        """
        Run one logical AI call.

        Args:
            prompt_kind: Which template and output schema to use
            payload: Template variables
            grounding: Knowledge fragments to inject
            course_id: Audit context
            learner_id: Audit context

        Returns:
            GenerationResult whose `output` is an instance of the kind's schema

        Raises:
            AITimeoutError: hard timeout hit (never retried)
            AIUpstreamError: provider failed; transient failures get at most one retry
            AIInvalidOutputError: response is not JSON or fails schema validation
        """
        correlation_id = uuid.uuid4().hex[:8]
        grounding = grounding or GroundingSelection()
        system_prompt, prompt = self.prompts.render(prompt_kind, payload, grounding.text)
        model = settings.llm.grading_model if prompt_kind == PromptKind.GRADE_OPEN else None

        start_time = time.perf_counter()
        attempts = 0
        response_text = ""
        error: Optional[AIError] = None
        output: Optional[BaseModel] = None

        try:
            while True:
                attempts += 1
                try:
                    response_text = await asyncio.wait_for(
                        self._complete(system_prompt, prompt, model),
                        timeout=self.timeout_seconds
                    )
                    break
                except asyncio.TimeoutError:
                    error = AITimeoutError(
                        f"{prompt_kind.value} timed out after {self.timeout_seconds}s"
                    )
                    break
                except AIUpstreamError as e:
                    error = e
                    if attempts > self.max_retries or not e.details.get("transient", True):
                        break
                    logger.warning(f"Retrying {prompt_kind.value} after upstream error: {e}")
                    error = None

            if error is None:
                try:
                    output = self._validate(prompt_kind, response_text)
                except AIInvalidOutputError as e:
                    error = e
        except asyncio.CancelledError:
            self._audit(
                correlation_id, prompt_kind, grounding, prompt, response_text,
                start_time, attempts, "cancelled", None, course_id, learner_id
            )
            raise

        self._audit(
            correlation_id, prompt_kind, grounding, prompt, response_text,
            start_time, attempts, "error" if error else "success", error, course_id, learner_id
        )

        if error is not None:
            error.details["correlation_id"] = correlation_id
            raise error

        return GenerationResult(
            output=output,
            text=response_text,
            latency_ms=self._elapsed_ms(start_time),
            correlation_id=correlation_id,
            attempts=attempts,
            fragment_ids=grounding.fragment_ids,
        )

    async def _complete(self, system_prompt: str, prompt: str, model: Optional[str]) -> str:
        try:
            return await self.llm.get_completion(
                prompt=prompt,
                system_prompt=system_prompt,
                model=model,
                json_mode=True
            )
        except LLMError as e:
            raise AIUpstreamError(str(e), **e.details) from e

    @staticmethod
    def _validate(prompt_kind: PromptKind, response_text: str) -> BaseModel:
        try:
            parsed = parse_json_response(response_text)
        except LLMResponseFormatError as e:
            raise AIInvalidOutputError(str(e)) from e

        try:
            return OUTPUT_SCHEMAS[prompt_kind].model_validate(parsed)
        except PydanticValidationError as e:
            raise AIInvalidOutputError(
                f"{prompt_kind.value} output failed validation: {e.error_count()} errors"
            ) from e

    @staticmethod
    def _elapsed_ms(start_time: float) -> int:
        return int((time.perf_counter() - start_time) * 1000)

    def _audit(
        self,
        correlation_id: str,
        prompt_kind: PromptKind,
        grounding: GroundingSelection,
        prompt: str,
        response_text: str,
        start_time: float,
        attempts: int,
        status: str,
        error: Optional[AIError],
        course_id: Optional[int],
        learner_id: Optional[str]
    ):
        latency_ms = self._elapsed_ms(start_time)
        error_code = error.code if error else None

        log_with_context(
            logger,
            logging.INFO if status == "success" else logging.WARNING,
            f"AI call {prompt_kind.value} {status}",
            learner_id=learner_id,
            action="ai_generate",
            correlation_id=correlation_id,
            prompt_kind=prompt_kind.value,
            fragment_ids=grounding.fragment_ids,
            latency_ms=latency_ms,
            attempts=attempts,
            status=status,
            error_code=error_code,
        )

        if self.store is None:
            return

        try:
            self.store.log_ai_interaction({
                "correlation_id": correlation_id,
                "course_id": course_id,
                "learner_id": learner_id,
                "prompt_kind": prompt_kind.value,
                "fragment_ids": grounding.fragment_ids,
                "fragment_previews": grounding.previews,
                "prompt_text": sanitize_for_logging(prompt, PROMPT_LOG_CHARS),
                "prompt_hash": hash_text(prompt),
                "response_text": sanitize_for_logging(response_text, RESPONSE_LOG_CHARS),
                "response_hash": hash_text(response_text) if response_text else None,
                "latency_ms": latency_ms,
                "attempts": attempts,
                "status": status,
                "error_code": error_code,
                "error_message": str(error) if error else None,
            })
        except Exception as e:
            logger.error(f"Failed to persist AI log {correlation_id}: {str(e)}")
