"""OpenAI-compatible ``LanguageModel`` implementation."""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, Iterable, List, Mapping, MutableMapping, Sequence, cast

import httpx
from openai import APIConnectionError, APIError, APIStatusError, AsyncOpenAI, RateLimitError
from openai.types.chat import ChatCompletionMessageParam, ChatCompletionToolParam
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .orchestration.driver import ModelResponse, StreamDelta
from .orchestration.tools import ToolCallRequest

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..services.settings import Settings

__all__ = ["ClientSettings", "OpenAIChatModel"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the model client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    temperature: float | None = 0.2
    default_headers: Mapping[str, str] | None = None
    metadata: Mapping[str, str] | None = None
    debug_logging: bool = False

    @classmethod
    def from_settings(cls, settings: "Settings") -> ClientSettings:
        return cls(
            base_url=settings.base_url,
            api_key=settings.api_key,
            model=settings.model,
            organization=settings.organization,
            request_timeout=settings.request_timeout,
            max_retries=settings.max_retries,
            retry_min_seconds=settings.retry_min_seconds,
            retry_max_seconds=settings.retry_max_seconds,
            temperature=settings.temperature,
            default_headers=dict(settings.default_headers) or None,
            metadata={str(key): str(value) for key, value in settings.metadata.items()} or None,
            debug_logging=settings.debug_logging,
        )


class OpenAIChatModel:
    """Chat-completions backend with retry semantics.

    Conforms to the driver's ``LanguageModel`` protocol: ``generate`` returns
    a complete :class:`ModelResponse`; ``stream`` yields :class:`StreamDelta`
    objects built from raw completion chunks (``stream=True``).
    """

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    @property
    def model(self) -> str:
        return self._settings.model

    async def generate(
        self,
        messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]] | None = None,
        **extra_params: Any,
    ) -> ModelResponse:
        """Request one complete chat completion."""

        payload = self._build_chat_payload(messages, tools, extra_params)
        LOGGER.debug(
            "Requesting chat completion via %s with %s message(s)",
            self._settings.model,
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        response: Any = None
        async for attempt in self._retrying():
            with attempt:
                response = await self._client.chat.completions.create(**payload)
        return self._to_model_response(response)

    async def stream(
        self,
        messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]] | None = None,
        **extra_params: Any,
    ) -> AsyncIterator[StreamDelta]:
        """Stream chat completion deltas for the provided messages."""

        payload = self._build_chat_payload(messages, tools, extra_params)
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            self._settings.model,
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        stream: Any = None
        async for attempt in self._retrying():
            with attempt:
                stream = await self._client.chat.completions.create(**payload, stream=True)
        # Only opening the stream is retried; errors after the first chunk propagate.
        async for chunk in stream:
            for delta in self._normalize_chunk(chunk):
                yield delta

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
            max_retries=0,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(
                (
                    APIError,
                    APIStatusError,
                    APIConnectionError,
                    RateLimitError,
                    httpx.TimeoutException,
                )
            ),
        )

    def _coerce_messages(self, messages: Iterable[Mapping[str, Any]]) -> List[ChatCompletionMessageParam]:
        normalized: List[ChatCompletionMessageParam] = []
        for message in messages:
            if isinstance(message, MutableMapping):
                normalized.append(cast(ChatCompletionMessageParam, dict(message)))
            else:
                try:
                    normalized.append(cast(ChatCompletionMessageParam, dict(message)))
                except TypeError as exc:
                    raise TypeError("Messages must be mapping-like objects") from exc
        if not normalized:
            raise ValueError("At least one message is required to start a chat")
        return normalized

    def _build_chat_payload(
        self,
        messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]] | None,
        extra_params: Mapping[str, Any],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": self._coerce_messages(messages),
        }
        merged_metadata = self._merge_metadata(extra_params.get("metadata"))
        if merged_metadata:
            payload["metadata"] = merged_metadata
        if tools:
            payload["tools"] = [cast(ChatCompletionToolParam, dict(tool)) for tool in tools]
        if self._settings.temperature is not None:
            payload["temperature"] = self._settings.temperature
        payload.update({key: value for key, value in extra_params.items() if key != "metadata"})
        return payload

    def _merge_metadata(self, runtime_metadata: Mapping[str, str] | None) -> Dict[str, str] | None:
        combined: Dict[str, str] = {}
        if self._settings.metadata:
            combined.update(self._settings.metadata)
        if runtime_metadata:
            combined.update(runtime_metadata)
        return combined or None

    @staticmethod
    def _usage_dict(usage: Any) -> dict[str, Any]:
        if usage is None:
            return {}
        dump = getattr(usage, "model_dump", None)
        if callable(dump):
            return {key: value for key, value in dump().items() if isinstance(value, (int, float))}
        return {}

    def _to_model_response(self, response: Any) -> ModelResponse:
        choices = getattr(response, "choices", None) or []
        if not choices:
            return ModelResponse(usage=self._usage_dict(getattr(response, "usage", None)))
        choice = choices[0]
        message = choice.message
        calls = [
            ToolCallRequest(
                id=call.id or "",
                name=call.function.name or "",
                arguments=call.function.arguments or "",
            )
            for call in (getattr(message, "tool_calls", None) or [])
            if getattr(call, "function", None) is not None
        ]
        return ModelResponse(
            text=message.content or "",
            tool_calls=calls,
            finish_reason=choice.finish_reason,
            usage=self._usage_dict(getattr(response, "usage", None)),
        )

    def _normalize_chunk(self, chunk: Any) -> list[StreamDelta]:
        deltas: list[StreamDelta] = []
        usage = self._usage_dict(getattr(chunk, "usage", None))
        if usage:
            deltas.append(StreamDelta(usage=usage))
        for choice in getattr(chunk, "choices", None) or []:
            delta = choice.delta
            if delta is not None and delta.content:
                deltas.append(StreamDelta(text=delta.content))
            for call in (getattr(delta, "tool_calls", None) or []):
                function = call.function
                deltas.append(
                    StreamDelta(
                        tool_call_index=call.index,
                        tool_call_id=call.id,
                        tool_name=function.name if function else None,
                        arguments_delta=function.arguments if function else None,
                    )
                )
            if choice.finish_reason:
                deltas.append(StreamDelta(finish_reason=choice.finish_reason))
        return deltas

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("Prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("Prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        try:
            result = close()
        except Exception as exc:  # pragma: no cover - defensive guard
            LOGGER.debug("Model client close failed to start: %s", exc)
            return
        if inspect.isawaitable(result):
            await result
