from __future__ import annotations

import asyncio
from dataclasses import dataclass
import os
import time
from typing import Any, Callable, Literal, Mapping, TypeVar

from langchain_openai import ChatOpenAI
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from loguru import logger

from novel_continuity.config.schema import AppConfigRoot
from novel_continuity.domain.hashing import sha256_text
from novel_continuity.llm.cache import SimpleCache

ChatRoute = Literal["continuity", "extraction"]

T = TypeVar("T")


@dataclass
class LLMResponse:
    text: str
    cached: bool
    # Model calls spent producing ``text``; 0 for cache hits.
    attempts: int = 0


@dataclass(frozen=True)
class ResolvedChatRuntime:
    route: str
    endpoint_name: str
    provider_name: str
    model: str
    temperature: float
    timeout_s: int
    max_concurrency: int
    retries: int
    max_tokens: int | None
    base_url: str | None
    api_key: str | None

    @property
    def identifier(self) -> str:
        return f"{self.provider_name}/{self.endpoint_name}/{self.model}"


def resolve_chat_runtime(
    config: AppConfigRoot,
    route: ChatRoute,
    *,
    temperature: float | None = None,
) -> ResolvedChatRuntime:
    """Resolve a route to its endpoint and provider.

    ``temperature`` replaces the endpoint's own setting, so one endpoint can
    serve both free-form and extraction calls.
    """

    endpoint_name, endpoint, provider = config.llm.resolve_chat_route(route)
    api_key = None
    if provider.api_key_env:
        api_key = os.getenv(provider.api_key_env)
        if not api_key:
            raise ValueError(f"Missing required API key env for route '{route}': {provider.api_key_env}")

    return ResolvedChatRuntime(
        route=route,
        endpoint_name=endpoint_name,
        provider_name=endpoint.provider,
        model=endpoint.model,
        temperature=endpoint.temperature if temperature is None else temperature,
        timeout_s=endpoint.timeout_s,
        max_concurrency=endpoint.max_concurrency,
        retries=endpoint.retries,
        max_tokens=endpoint.max_tokens,
        base_url=provider.base_url,
        api_key=api_key,
    )


def _build_chat_model(runtime: ResolvedChatRuntime) -> ChatOpenAI:
    kwargs: dict[str, Any] = {
        "model": runtime.model,
        "temperature": runtime.temperature,
        "timeout": runtime.timeout_s,
        # Attempts are counted by OpenAIChatClient; SDK retries would multiply them.
        "max_retries": 0,
    }
    if runtime.max_tokens is not None:
        kwargs["max_tokens"] = runtime.max_tokens
    if runtime.base_url:
        kwargs["base_url"] = runtime.base_url
    if runtime.api_key:
        kwargs["api_key"] = runtime.api_key
    return ChatOpenAI(**kwargs)


def make_cache_key(*parts: str) -> str:
    return sha256_text("::".join(parts))


def _error_location(exc: Exception) -> str:
    parts = []
    for name in ("lineno", "colno", "pos"):
        value = getattr(exc, name, None)
        if isinstance(value, int):
            parts.append(f"{name}={value}")
    return ", ".join(parts) or "-"


class OpenAIChatClient:
    """JSON-returning chat calls behind a response cache and bounded retries.

    Transport errors and empty replies are retried up to the endpoint's
    ``retries`` (0 by default, a single call). A reply ``parser`` rejects is
    never retried. Only parsed replies are cached, and a cached reply the
    parser now rejects is dropped.
    """

    def __init__(
        self,
        config: AppConfigRoot,
        cache: SimpleCache,
        route: ChatRoute = "extraction",
        *,
        temperature: float | None = None,
    ):
        self.config = config
        self.cache = cache
        self.runtime = resolve_chat_runtime(config, route, temperature=temperature)
        self.model = _build_chat_model(self.runtime)
        self.model_identifier = self.runtime.identifier
        self._semaphore = asyncio.Semaphore(max(1, self.runtime.max_concurrency))

    def _log_fields(
        self,
        *,
        cache_key: str | None = None,
        attempt: int | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "route": self.runtime.route,
            "provider": self.runtime.provider_name,
            "endpoint": self.runtime.endpoint_name,
            "model": self.runtime.model,
        }
        fields.update({key: value for key, value in (context or {}).items() if value is not None})
        if cache_key:
            fields["cache_key"] = cache_key[:12]
        if "input_hash" in fields:
            fields["input_hash"] = str(fields["input_hash"])[:12]
        if attempt is not None:
            fields["attempt"] = f"{attempt}/{self.attempts_allowed}"
        return fields

    @property
    def attempts_allowed(self) -> int:
        return max(1, self.runtime.retries + 1)

    def _clip_payload(self, payload: str) -> str:
        limit = int(self.config.observability.json_error_payload_max_chars)
        if limit <= 0 or len(payload) <= limit:
            return payload
        head = limit // 2
        tail = limit - head
        if head == 0:
            return payload[:limit]
        return f"{payload[:head]}\n...[truncated {len(payload) - limit} chars]...\n{payload[-tail:]}"

    def _report_unparseable(self, log, *, source: str, raw_text: str, exc: Exception) -> None:
        log.warning(
            "JSON parse failed source={} error_type={} error={} location={} raw_len={} raw_hash={}",
            source,
            type(exc).__name__,
            exc,
            _error_location(exc),
            len(raw_text),
            sha256_text(raw_text),
        )
        if self.config.observability.log_json_error_payload:
            log.warning("JSON parse raw_response={}", self._clip_payload(raw_text))

    def _from_cache(
        self,
        cache_key: str,
        parser: Callable[[str], T],
        context: Mapping[str, Any] | None,
    ) -> tuple[LLMResponse, T] | None:
        cached = self.cache.get(cache_key)
        if not cached.hit or cached.value is None:
            return None
        try:
            return LLMResponse(text=cached.value, cached=True), parser(cached.value)
        except Exception as exc:  # noqa: BLE001
            log = logger.bind(**self._log_fields(cache_key=cache_key, context=context))
            self._report_unparseable(log, source="cache", raw_text=cached.value, exc=exc)
            log.warning("Deleting invalid cached LLM response")
            self.cache.delete(cache_key)
            return None

    async def complete_json_async(
        self,
        system_prompt: str,
        user_prompt: str,
        cache_key: str,
        parser: Callable[[str], T],
        *,
        context: Mapping[str, Any] | None = None,
    ) -> tuple[LLMResponse, T]:
        hit = self._from_cache(cache_key, parser, context)
        if hit is not None:
            return hit

        messages = [SystemMessage(system_prompt), HumanMessage(user_prompt)]
        text, parsed, attempts = await self._invoke_with_retry(messages, parser, cache_key=cache_key, context=context)
        self.cache.set(cache_key, text)
        return LLMResponse(text=text, cached=False, attempts=attempts), parsed

    async def _call_model(self, messages: list[BaseMessage]) -> str:
        async with self._semaphore:
            response = await asyncio.to_thread(self.model.invoke, messages)
        text = str(response.content).strip()
        if not text:
            raise RuntimeError("Empty LLM response")
        return text

    async def _invoke_with_retry(
        self,
        messages: list[BaseMessage],
        parser: Callable[[str], T],
        *,
        cache_key: str,
        context: Mapping[str, Any] | None = None,
    ) -> tuple[str, T, int]:
        last_exc: Exception | None = None

        for attempt in range(1, self.attempts_allowed + 1):
            log = logger.bind(**self._log_fields(cache_key=cache_key, attempt=attempt, context=context))
            started = time.perf_counter()
            try:
                text = await self._call_model(messages)
            except Exception as exc:  # noqa: BLE001
                last_exc = exc
                if self.config.observability.log_retry_attempts:
                    log.warning(
                        "LLM call failed elapsed_ms={} error_type={} error={}",
                        int((time.perf_counter() - started) * 1000),
                        type(exc).__name__,
                        exc,
                    )
                if attempt < self.attempts_allowed:
                    await asyncio.sleep(min(0.5 * (2 ** (attempt - 1)), 4.0))
                continue

            # A reply the parser rejects ends the call; it is never re-asked.
            try:
                return text, parser(text), attempt
            except Exception as parse_exc:  # noqa: BLE001
                self._report_unparseable(log, source="llm_response", raw_text=text, exc=parse_exc)
                raise RuntimeError("LLM reply rejected by parser") from parse_exc

        raise RuntimeError("LLM call failed after retries") from last_exc
