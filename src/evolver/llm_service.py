"""
LLM Service: the single gateway to the OpenAI-compatible chat endpoint.

==============================================================================
FEATURES IMPLEMENTED IN THIS MODULE:
==============================================================================

1. RATE LIMIT HANDLING WITH EXPONENTIAL BACKOFF (Feature: rate-limit-retry)
   - Automatic retry with exponential backoff when the endpoint returns 429
   - Jitter added to prevent thundering herd on retries
   - Non rate-limit errors are raised immediately

2. PERSONA REPLY GENERATION (Feature: voice-sessions)
   - generate_text() turns a call transcript into chat history from the
     synthetic customer's point of view and returns the reply plus token usage

3. STRUCTURED JUDGE OUTPUT (Feature: healing-suggestions)
   - generate_structured() asks for JSON, tolerates fences / <think> blocks /
     surrounding prose, and validates the result against a pydantic schema

Every upstream or parse failure surfaces as ProviderError so callers can
decide between a heuristic fallback and aborting.
==============================================================================
"""

import asyncio
import json
import random
import re
from dataclasses import dataclass
from typing import Generic, List, Optional, Sequence, Type, TypeVar

from pydantic import BaseModel, ValidationError as PydanticValidationError

from .errors import ProviderError
from .models import TranscriptTurn, TurnRole
from . import config

import logging
logger = logging.getLogger(__name__)

T = TypeVar('T')
M = TypeVar('M', bound=BaseModel)


def _extract_json(text: str) -> dict:
    """Extract JSON from LLM output that may contain extra text.

    Handles:
    - Clean JSON (just returns parsed)
    - Markdown code fences (```json ... ```)
    - Reasoning model output with <think>...</think> tags
    - Leading/trailing prose around a JSON object
    """
    text = (text or "").strip()

    text = re.sub(r'<think>.*?</think>', '', text, flags=re.DOTALL).strip()
    # Unclosed <think> tag
    text = re.sub(r'<think>.*', '', text, flags=re.DOTALL).strip()

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    fence_match = re.search(r'```(?:json)?\s*\n?(.*?)\n?\s*```', text, re.DOTALL)
    if fence_match:
        try:
            return json.loads(fence_match.group(1).strip())
        except json.JSONDecodeError:
            pass

    brace_match = re.search(r'\{.*\}', text, re.DOTALL)
    if brace_match:
        try:
            return json.loads(brace_match.group(0))
        except json.JSONDecodeError:
            pass

    raise json.JSONDecodeError("No valid JSON found in LLM output", text, 0)


# ==============================================================================
# RETRY RESULT WRAPPER (Feature: rate-limit-retry)
# ==============================================================================
@dataclass
class RetryResult(Generic[T]):
    """Result from retry_with_backoff including retry statistics.

    Attributes:
        result: The actual return value from the wrapped function
        retry_count: Number of retries that occurred (0 = success on first try)
        had_rate_limit: True if any rate limit error was encountered
    """
    result: T
    retry_count: int
    had_rate_limit: bool


def _is_rate_limit(error: Exception) -> bool:
    error_str = str(error).lower()
    return (
        getattr(error, 'status_code', None) == 429 or
        '429' in error_str or
        'rate' in error_str and 'limit' in error_str or
        'too many requests' in error_str
    )


# ==============================================================================
# EXPONENTIAL BACKOFF RETRY WRAPPER (Feature: rate-limit-retry)
# ==============================================================================
# 1. ONLY retries on rate limit errors (429, "too many requests", etc.)
# 2. Delay doubles each attempt, capped at RETRY_MAX_DELAY
# 3. Adds 0-10% random jitter
# 4. Optional on_retry callback before each wait
# ==============================================================================
async def retry_with_backoff(func, *args, max_attempts=None, base_delay=None, on_retry=None, **kwargs) -> RetryResult:
    """
    Retry an async function with exponential backoff for rate limit errors.

    Args:
        func: The async function to call
        max_attempts: Maximum number of attempts (default from config)
        base_delay: Base delay in seconds (doubled each retry)
        on_retry: Optional async callback(attempt, max_attempts, wait_time, error)
        *args, **kwargs: Arguments to pass to the function

    Raises:
        The last exception if all retries fail or if a non-rate-limit error occurs
    """
    max_attempts = max_attempts or config.RETRY_MAX_ATTEMPTS
    base_delay = config.RETRY_BASE_DELAY if base_delay is None else base_delay
    last_exception = None
    retry_count = 0

    for attempt in range(max_attempts):
        try:
            result = await func(*args, **kwargs)
            return RetryResult(result=result, retry_count=retry_count, had_rate_limit=retry_count > 0)
        except Exception as e:
            if not _is_rate_limit(e):
                raise

            last_exception = e
            retry_count += 1

            if attempt < max_attempts - 1:
                delay = min(base_delay * (2 ** attempt), config.RETRY_MAX_DELAY)
                wait_time = delay + random.uniform(0, delay * 0.1)

                logger.warning(
                    f"Rate limit hit (attempt {attempt + 1}/{max_attempts}). "
                    f"Retrying in {wait_time:.1f}s... Error: {str(e)[:100]}"
                )

                if on_retry:
                    try:
                        await on_retry(attempt + 1, max_attempts, wait_time, str(e)[:100])
                    except Exception as cb_err:
                        logger.warning(f"on_retry callback failed: {cb_err}")

                await asyncio.sleep(wait_time)
            else:
                logger.error(f"Max retries ({max_attempts}) exceeded for rate limit error: {str(e)[:200]}")

    raise last_exception


@dataclass
class GenerationResult:
    text: str
    tokens_in: int = 0
    tokens_out: int = 0
    model: str = ""


def _history_to_messages(system_prompt: str, history: Sequence[TranscriptTurn]) -> List[dict]:
    """Chat messages from the persona's side: the agent speaks as 'user'."""
    messages = [{"role": "system", "content": system_prompt}]
    for turn in history:
        role = "user" if turn.role == TurnRole.agent else "assistant"
        messages.append({"role": role, "content": turn.content})
    return messages


class LLMService:
    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None, model: Optional[str] = None):
        self.base_url = base_url or config.LLM_BASE_URL
        self.api_key = api_key or config.LLM_API_KEY
        self.model = model or config.LLM_MODEL
        self.openai_client = None

    def _get_client(self):
        if self.openai_client is None:
            from openai import OpenAI
            logger.info(f"Initializing OpenAI-compatible client (base_url: {self.base_url}, model: {self.model})")
            self.openai_client = OpenAI(base_url=self.base_url, api_key=self.api_key)
        return self.openai_client

    async def _chat(self, messages: List[dict], model: str, **params):
        client = self._get_client()

        async def _call_llm():
            return await asyncio.to_thread(
                client.chat.completions.create,
                model=model,
                messages=messages,
                **params,
            )

        try:
            retry_result = await retry_with_backoff(_call_llm)
        except Exception as e:
            raise ProviderError("llm", f"chat completion failed: {e}", cause=e) from e
        return retry_result.result

    @staticmethod
    def _usage(response) -> tuple:
        usage = getattr(response, 'usage', None)
        if not usage:
            return 0, 0
        return getattr(usage, 'prompt_tokens', 0) or 0, getattr(usage, 'completion_tokens', 0) or 0

    async def generate_text(
        self,
        system_prompt: str,
        history: Sequence[TranscriptTurn],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> GenerationResult:
        """Generate the next persona utterance for a call in progress."""
        model = model or self.model
        params = {}
        if temperature is not None:
            params["temperature"] = temperature
        if max_tokens is not None:
            params["max_tokens"] = max_tokens

        response = await self._chat(_history_to_messages(system_prompt, history), model, **params)
        tokens_in, tokens_out = self._usage(response)
        content = response.choices[0].message.content or ""
        return GenerationResult(text=content.strip(), tokens_in=tokens_in, tokens_out=tokens_out, model=model)

    async def generate_structured(self, schema: Type[M], system_prompt: str, prompt: str) -> M:
        """Ask for a JSON object shaped like `schema` and validate it."""
        schema_json = json.dumps(schema.model_json_schema())
        messages = [
            {
                "role": "system",
                "content": (
                    f"{system_prompt}\n\n"
                    f"Respond with ONLY a JSON object matching this JSON schema:\n{schema_json}"
                ),
            },
            {"role": "user", "content": prompt},
        ]
        response = await self._chat(messages, self.model, temperature=0.3)
        content = response.choices[0].message.content or ""
        try:
            return schema.model_validate(_extract_json(content))
        except (json.JSONDecodeError, PydanticValidationError) as e:
            raise ProviderError("llm", f"invalid {schema.__name__} output: {e}", cause=e) from e


class PersonaResponder:
    """Generates the synthetic customer's replies with the persona model settings."""

    def __init__(self, llm: LLMService):
        self.llm = llm

    async def generate_text(self, system_prompt: str, history: Sequence[TranscriptTurn]) -> GenerationResult:
        return await self.llm.generate_text(
            system_prompt,
            history,
            model=config.PERSONA_LLM_MODEL,
            temperature=config.PERSONA_TEMPERATURE,
            max_tokens=config.PERSONA_MAX_TOKENS,
        )


def compute_cost(model: str, tokens_in: int, tokens_out: int) -> float:
    """Compute USD cost from token counts using the pricing table."""
    pricing = config.PRICING_TABLE.get(model, config.PRICING_TABLE.get("_default", {"input_per_1k": 0, "output_per_1k": 0}))
    return (tokens_in / 1000 * pricing["input_per_1k"]) + (tokens_out / 1000 * pricing["output_per_1k"])


# Service instance
_llm_service: Optional[LLMService] = None


def get_llm_service() -> LLMService:
    global _llm_service
    if _llm_service is None:
        _llm_service = LLMService()
    return _llm_service
