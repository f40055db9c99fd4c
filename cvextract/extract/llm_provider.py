"""
LLM completion clients for JSON-mode extraction calls.

Supports:
- Azure OpenAI (deployment name as model)
- OpenAI (gpt-4o, gpt-4o-mini, etc.)
- Anthropic (claude-sonnet-4, claude-haiku, etc.)

Clients make exactly one request per `complete()` call. Retries, backoff and
failure classification belong to the parser's state machine, so SDK-level
retries are switched off here and exceptions are allowed to propagate.
`classify_llm_error` maps an exception to the state machine event.

Usage:
    client = create_completion_client(config.llm)
    completion = client.complete(messages, max_tokens=4000, temperature=0.0, timeout=90.0)
    data = parse_json_content(completion.content)
"""

import json
import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

import anthropic
import openai

from ..config import LLMConfig
from .state_machine import EventType

logger = logging.getLogger(__name__)


class LLMProvider(str, Enum):
    """Supported LLM providers."""
    AZURE = "azure"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


JSON_ONLY_SUFFIX = "\n\nRespond with valid JSON only."

RATE_LIMIT_MARKERS = ("429", "rate limit", "too many requests", "overloaded")
AUTH_MARKERS = ("401", "403", "unauthorized", "invalid api key", "permission denied")
TIMEOUT_MARKERS = ("timed out", "timeout")


@dataclass
class RateLimitConfig:
    """Client-side call spacing."""
    requests_per_minute: Optional[int] = None  # None = no limit
    delay_between_calls: float = 0.0  # seconds

    def get_delay(self) -> float:
        """Calculate delay to apply between calls."""
        if self.delay_between_calls > 0:
            return self.delay_between_calls
        if self.requests_per_minute and self.requests_per_minute > 0:
            return 60.0 / self.requests_per_minute
        return 0.0


@dataclass
class LLMCompletion:
    """Raw text returned by one completion call."""
    content: Optional[str]
    prompt_tokens: int = 0
    completion_tokens: int = 0
    model: Optional[str] = None

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class LLMResponseFormatError(ValueError):
    """Completion text could not be read as a JSON object."""


# =============================================================================
# Client construction
# =============================================================================

def create_raw_client(llm_config: LLMConfig) -> Any:
    """
    Create the provider SDK client.

    SDK retries are disabled; the parser owns the retry budget.
    """
    provider = LLMProvider(llm_config.provider.lower())

    if provider == LLMProvider.AZURE:
        return openai.AzureOpenAI(
            azure_endpoint=llm_config.endpoint,
            api_key=llm_config.api_key,
            api_version=llm_config.api_version,
            max_retries=0,
        )
    if provider == LLMProvider.OPENAI:
        return openai.OpenAI(api_key=llm_config.api_key, max_retries=0)
    if provider == LLMProvider.ANTHROPIC:
        return anthropic.Anthropic(api_key=llm_config.api_key, max_retries=0)
    raise ValueError(f"Unsupported provider: {llm_config.provider}")


class JsonCompletionClient:
    """
    One JSON-mode chat completion per call, with call spacing.

    Args:
        raw_client: SDK client from create_raw_client()
        provider: Provider of raw_client
        model: Model or Azure deployment name
        rate_limit: Optional spacing between calls
        sleep: Injectable sleep for tests
    """

    def __init__(
        self,
        raw_client: Any,
        provider: LLMProvider,
        model: str,
        rate_limit: Optional[RateLimitConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.raw_client = raw_client
        self.provider = LLMProvider(provider)
        self.model = model
        self.rate_limit = rate_limit or RateLimitConfig()
        self._sleep = sleep
        self._last_call_time = 0.0

    def _apply_rate_limit(self):
        delay = self.rate_limit.get_delay()
        if delay <= 0:
            return
        elapsed = time.time() - self._last_call_time
        if elapsed < delay:
            sleep_time = delay - elapsed
            logger.debug(f"Rate limiting: sleeping {sleep_time:.2f}s")
            self._sleep(sleep_time)

    def complete(
        self,
        messages: list[dict],
        max_tokens: int,
        temperature: float = 0.0,
        timeout: Optional[float] = None,
    ) -> LLMCompletion:
        """
        Send messages (OpenAI format) and return the raw completion text.

        Raises whatever the SDK raises; see classify_llm_error().
        """
        self._apply_rate_limit()
        try:
            if self.provider == LLMProvider.ANTHROPIC:
                return self._complete_anthropic(messages, max_tokens, temperature, timeout)
            return self._complete_openai(messages, max_tokens, temperature, timeout)
        finally:
            self._last_call_time = time.time()

    def _complete_openai(self, messages, max_tokens, temperature, timeout) -> LLMCompletion:
        response = self.raw_client.chat.completions.create(
            model=self.model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
            response_format={"type": "json_object"},
            timeout=timeout,
        )
        content = response.choices[0].message.content if response.choices else None
        usage = getattr(response, "usage", None)
        return LLMCompletion(
            content=content,
            prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
            model=getattr(response, "model", self.model),
        )

    def _complete_anthropic(self, messages, max_tokens, temperature, timeout) -> LLMCompletion:
        # Anthropic takes the system prompt separately
        system_msg = ""
        user_messages = []
        for msg in messages:
            if msg["role"] == "system":
                system_msg = msg["content"]
            else:
                user_messages.append(dict(msg))

        if user_messages:
            user_messages[-1]["content"] += JSON_ONLY_SUFFIX

        response = self.raw_client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system_msg,
            messages=user_messages,
            timeout=timeout,
        )
        text_blocks = [block.text for block in response.content if getattr(block, "type", "text") == "text"]
        usage = getattr(response, "usage", None)
        return LLMCompletion(
            content="".join(text_blocks) or None,
            prompt_tokens=getattr(usage, "input_tokens", 0) or 0,
            completion_tokens=getattr(usage, "output_tokens", 0) or 0,
            model=getattr(response, "model", self.model),
        )


def create_completion_client(llm_config: LLMConfig) -> Optional[JsonCompletionClient]:
    """
    Build a completion client from config (environment applied).

    Returns None when the provider is not fully configured.
    """
    resolved = llm_config.resolved()
    if not resolved.is_configured():
        logger.warning(f"LLM provider '{resolved.provider}' is not configured")
        return None

    rate_limit = RateLimitConfig(
        requests_per_minute=resolved.requests_per_minute,
        delay_between_calls=resolved.delay_between_calls,
    )
    client = JsonCompletionClient(
        raw_client=create_raw_client(resolved),
        provider=LLMProvider(resolved.provider.lower()),
        model=resolved.model,
        rate_limit=rate_limit,
    )
    logger.info(f"LLM client ready: provider={resolved.provider}, model={resolved.model}")
    return client


# =============================================================================
# Response and error interpretation
# =============================================================================

def parse_json_content(content: str) -> dict:
    """
    Parse completion text as a JSON object.

    Falls back to the outermost {...} span when the model wrapped the JSON
    in prose or a code fence.
    """
    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        json_match = re.search(r"\{[\s\S]*\}", content)
        if not json_match:
            raise LLMResponseFormatError(f"Could not parse JSON from response: {content[:200]}")
        try:
            data = json.loads(json_match.group())
        except json.JSONDecodeError as e:
            raise LLMResponseFormatError(f"Could not parse JSON from response: {e}") from e

    if not isinstance(data, dict):
        raise LLMResponseFormatError(f"Expected a JSON object, got {type(data).__name__}")
    return data


_TIMEOUT_ERRORS = (openai.APITimeoutError, anthropic.APITimeoutError, TimeoutError)
_RATE_LIMIT_ERRORS = (openai.RateLimitError, anthropic.RateLimitError)
_AUTH_ERRORS = (
    openai.AuthenticationError,
    openai.PermissionDeniedError,
    anthropic.AuthenticationError,
    anthropic.PermissionDeniedError,
)


def classify_llm_error(exc: BaseException) -> EventType:
    """Map an exception raised during a completion call to a state machine event."""
    if isinstance(exc, LLMResponseFormatError):
        return EventType.INVALID_JSON
    if isinstance(exc, _TIMEOUT_ERRORS):
        return EventType.TIMEOUT
    if isinstance(exc, _RATE_LIMIT_ERRORS):
        return EventType.RATE_LIMITED
    if isinstance(exc, _AUTH_ERRORS):
        return EventType.AUTH_FAILED

    status = getattr(exc, "status_code", None)
    if status == 429:
        return EventType.RATE_LIMITED
    if status in (401, 403):
        return EventType.AUTH_FAILED

    error_str = str(exc).lower()
    if any(marker in error_str for marker in RATE_LIMIT_MARKERS):
        return EventType.RATE_LIMITED
    if any(marker in error_str for marker in AUTH_MARKERS):
        return EventType.AUTH_FAILED
    if any(marker in error_str for marker in TIMEOUT_MARKERS):
        return EventType.TIMEOUT
    return EventType.TRANSPORT_ERROR
