"""
OpenAI-compatible chat completions adapter.

Serves both OpenAI and Cerebras: the two speak the same ``/chat/completions``
protocol and differ only in base URL, model and the name of the token-limit
field. Requests are non-streaming; the whole reply is synthesized at once.
"""

from __future__ import annotations

import asyncio
import functools
import json
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp
from prometheus_client import Counter, Histogram
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..config import AppConfig, LLMConfig
from ..errors import ConfigurationError, RateLimitedError
from ..logging_config import get_logger
from .base import LLMComponent

logger = get_logger(__name__)

_LLM_REQUESTS_TOTAL = Counter(
    "voice_agent_llm_requests_total",
    "Chat completion attempts by provider and outcome",
    labelnames=("provider", "outcome"),
)
_LLM_FALLBACKS_TOTAL = Counter(
    "voice_agent_llm_fallbacks_total",
    "Fallback replies spoken after rate-limit retries were exhausted",
    labelnames=("provider",),
)
_LLM_LATENCY_SECONDS = Histogram(
    "voice_agent_llm_latency_seconds",
    "Latency of successful chat completion requests",
    labelnames=("provider",),
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 1.5, 2.0, 3.0, 5.0, 10.0),
)

# Providers whose API names the limit max_completion_tokens
_COMPLETION_TOKENS_PROVIDERS = {"cerebras"}

# Failures other than 429 that are retried without waiting
_TRANSIENT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, ValueError)


def _make_http_headers(api_key: str) -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
        "User-Agent": "Plivo-Voice-Agent/1.0",
    }


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def extract_reply(data: Dict[str, Any]) -> str:
    choices = data.get("choices") or []
    if not choices:
        return ""
    message = choices[0].get("message") or {}
    return message.get("content") or ""


class OpenAICompatibleLLMAdapter(LLMComponent):
    """Chat completions against an OpenAI-compatible endpoint.

    Attempts are driven by tenacity. HTTP 429 waits ``backoff_base_sec * 2**n``
    before the next attempt; when the last of ``max_retries`` attempts is rate
    limited the configured fallback reply is returned at once instead of
    raising. Any other failure is retried immediately and re-raised after the
    last attempt.
    """

    def __init__(
        self,
        provider_name: str,
        *,
        base_url: str,
        api_key: Optional[str],
        model: str,
        llm_config: Optional[LLMConfig] = None,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.provider_name = provider_name
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._model = model
        self._llm_config = llm_config or LLMConfig()
        self._session_factory = session_factory
        self._session: Optional[aiohttp.ClientSession] = None
        self._sleep = sleep
        self._rate_limit_wait = wait_exponential(multiplier=self._llm_config.backoff_base_sec)

    @classmethod
    def from_config(cls, config: AppConfig, **kwargs) -> "OpenAICompatibleLLMAdapter":
        provider = config.llm.provider.lower()
        if provider == "cerebras":
            section = config.cerebras
        elif provider == "openai":
            section = config.openai
        else:
            raise ConfigurationError(f"Unknown llm.provider: {config.llm.provider}")
        return cls(
            provider,
            base_url=section.base_url,
            api_key=section.api_key,
            model=section.model,
            llm_config=config.llm,
            **kwargs,
        )

    @property
    def url(self) -> str:
        return f"{self._base_url}/chat/completions"

    def build_messages(self, history: List[Dict[str, str]], user_text: str) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": self._llm_config.system_prompt},
            *history,
            {"role": "user", "content": user_text},
        ]

    def build_payload(self, messages: List[Dict[str, str]]) -> Dict[str, Any]:
        limit_field = "max_completion_tokens" if self.provider_name in _COMPLETION_TOKENS_PROVIDERS else "max_tokens"
        return {
            "model": self._model,
            "messages": messages,
            limit_field: self._llm_config.max_tokens,
        }

    def _backoff(self, retry_state: RetryCallState) -> float:
        """Exponential wait after a 429, no wait after any other failure."""
        if isinstance(retry_state.outcome.exception(), RateLimitedError):
            return self._rate_limit_wait(retry_state)
        return 0.0

    def _log_retry(self, call_id: str, max_retries: int, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception()
        if isinstance(exc, RateLimitedError):
            _LLM_REQUESTS_TOTAL.labels(provider=self.provider_name, outcome="rate_limited").inc()
            logger.warning(
                "Rate limited, backing off",
                call_id=call_id,
                provider=self.provider_name,
                wait_sec=retry_state.next_action.sleep,
                attempt=retry_state.attempt_number,
                max_retries=max_retries,
            )
            return
        _LLM_REQUESTS_TOTAL.labels(provider=self.provider_name, outcome="error").inc()
        logger.warning(
            "Chat completion error, retrying",
            call_id=call_id,
            provider=self.provider_name,
            attempt=retry_state.attempt_number,
            error=str(exc),
        )

    async def _post_completion(self, call_id: str, payload: Dict[str, Any], headers: Dict[str, str], timeout) -> str:
        started = time.monotonic()
        async with self._session.post(self.url, json=payload, headers=headers, timeout=timeout) as response:
            if response.status == 429:
                raise RateLimitedError(_parse_retry_after(response.headers.get("Retry-After")))
            body = await response.text()
            if response.status >= 400:
                logger.error(
                    "Chat completion failed",
                    call_id=call_id,
                    provider=self.provider_name,
                    status=response.status,
                    body_preview=body[:128],
                )
                response.raise_for_status()
            reply = extract_reply(json.loads(body))
        _LLM_REQUESTS_TOTAL.labels(provider=self.provider_name, outcome="ok").inc()
        _LLM_LATENCY_SECONDS.labels(provider=self.provider_name).observe(time.monotonic() - started)
        return reply

    async def generate(self, call_id: str, history: List[Dict[str, str]], user_text: str) -> str:
        if not self._api_key:
            raise ConfigurationError(f"{self.provider_name} LLM requires an API key")

        await self._ensure_session()
        assert self._session
        payload = self.build_payload(self.build_messages(history, user_text))
        headers = _make_http_headers(self._api_key)
        timeout = aiohttp.ClientTimeout(total=self._llm_config.request_timeout_sec)
        max_retries = max(1, self._llm_config.max_retries)

        logger.debug(
            "Chat completion request",
            call_id=call_id,
            provider=self.provider_name,
            model=self._model,
            history_len=len(history),
        )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_retries),
            wait=self._backoff,
            retry=retry_if_exception_type((RateLimitedError,) + _TRANSIENT_ERRORS),
            before_sleep=functools.partial(self._log_retry, call_id, max_retries),
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    reply = await self._post_completion(call_id, payload, headers, timeout)
        except RateLimitedError:
            _LLM_REQUESTS_TOTAL.labels(provider=self.provider_name, outcome="rate_limited").inc()
            _LLM_FALLBACKS_TOTAL.labels(provider=self.provider_name).inc()
            logger.warning("Rate-limit retries exhausted, using fallback reply", call_id=call_id, provider=self.provider_name)
            return self._llm_config.fallback_reply
        except _TRANSIENT_ERRORS as exc:
            _LLM_REQUESTS_TOTAL.labels(provider=self.provider_name, outcome="error").inc()
            logger.error(
                "Chat completion error, giving up",
                call_id=call_id,
                provider=self.provider_name,
                error=str(exc),
            )
            raise

        logger.info(
            "Chat completion received",
            call_id=call_id,
            provider=self.provider_name,
            preview=reply[:80],
        )
        return reply

    async def _ensure_session(self) -> None:
        if self._session and not self._session.closed:
            return
        factory = self._session_factory or aiohttp.ClientSession
        self._session = factory()

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
