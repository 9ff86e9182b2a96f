"""Raw HTTP transport with retry/backoff and server-sent-event streaming."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from ..services import telemetry as telemetry_service
from ..utils.json_repair import safe_parse_json
from .ai_types import RetryPolicy
from .errors import ApiRequestError, StreamError

__all__ = [
    "HttpTransport",
    "ServerSentEvent",
    "SSEDecoder",
    "ChunkCallback",
    "parse_retry_after",
    "DONE_SENTINEL",
]

LOGGER = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
_BODY_EXCERPT_CHARS = 500

ChunkCallback = Callable[[Any, bool], Awaitable[None] | None]


# -----------------------------------------------------------------------------
# Retry helpers
# -----------------------------------------------------------------------------


class _RetryableStatusError(ApiRequestError):
    """Throttled or server-side failure that should be retried."""

    def __init__(self, message: str, *, status_code: int, body: str, retry_after: float | None) -> None:
        super().__init__(message, status_code=status_code, body=body)
        self.retry_after = retry_after


def parse_retry_after(headers: Mapping[str, str]) -> float | None:
    """Return the server's retry hint in seconds, if any.

    ``retry-after-ms`` takes precedence over ``retry-after``; HTTP-date values
    are not supported and are ignored.
    """

    raw_ms = headers.get("retry-after-ms")
    if raw_ms:
        try:
            return max(0.0, float(raw_ms) / 1000.0)
        except ValueError:
            LOGGER.debug("Ignoring malformed retry-after-ms header: %s", raw_ms)
    raw = headers.get("retry-after")
    if raw:
        try:
            return max(0.0, float(raw))
        except ValueError:
            LOGGER.debug("Ignoring non-numeric retry-after header: %s", raw)
    return None


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, _RetryableStatusError):
        return True
    return isinstance(exc, httpx.TransportError)


def _error_message(status_code: int, text: str) -> str:
    detail = text.strip()[:_BODY_EXCERPT_CHARS]
    parsed = safe_parse_json(text) if text else None
    if isinstance(parsed, dict):
        error = parsed.get("error")
        if isinstance(error, dict) and error.get("message"):
            detail = str(error["message"])
        elif isinstance(error, str):
            detail = error
        elif parsed.get("message"):
            detail = str(parsed["message"])
    if detail:
        return f"API request failed with status {status_code}: {detail}"
    return f"API request failed with status {status_code}"


# -----------------------------------------------------------------------------
# Server-sent events
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ServerSentEvent:
    """One dispatched SSE event."""

    data: str
    event: str | None = None
    id: str | None = None


class SSEDecoder:
    """Incremental decoder for ``text/event-stream`` lines."""

    def __init__(self) -> None:
        self._data: list[str] = []
        self._event: str | None = None
        self._last_id: str | None = None

    def feed(self, line: str) -> ServerSentEvent | None:
        line = line.rstrip("\r\n")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            self._data.append(value)
        elif name == "event":
            self._event = value
        elif name == "id":
            self._last_id = value
        return None

    def flush(self) -> ServerSentEvent | None:
        """Dispatch whatever is buffered when the stream ends without a blank line."""

        return self._dispatch()

    def _dispatch(self) -> ServerSentEvent | None:
        if not self._data:
            self._event = None
            return None
        event = ServerSentEvent(data="\n".join(self._data), event=self._event, id=self._last_id)
        self._data = []
        self._event = None
        return event


# -----------------------------------------------------------------------------
# Transport
# -----------------------------------------------------------------------------


class HttpTransport:
    """POST requests with bounded exponential backoff plus persistent SSE reads.

    Args:
        client: Optional pre-built ``httpx.AsyncClient`` (tests inject one
            backed by ``httpx.MockTransport``).
        retry_policy: Default backoff policy; per-call arguments override it.
        timeout: Request timeout in seconds when the transport builds its own client.
        sleep: Coroutine used between attempts.
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        retry_policy: RetryPolicy | None = None,
        timeout: float | None = 60.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._retry_policy = (retry_policy or RetryPolicy()).clamp()
        self._sleep = sleep

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    async def post(
        self,
        url: str,
        headers: Mapping[str, str] | None = None,
        body: Any = None,
        *,
        max_retries: int | None = None,
        initial_delay_ms: float | None = None,
        backoff_factor: float | None = None,
    ) -> Any:
        """POST ``body`` as JSON and return the decoded response.

        Returns:
            The parsed JSON body, ``{}`` for an empty body, or
            ``{"_raw_response": text}`` when the body cannot be parsed or repaired.

        Raises:
            ApiRequestError: On a non-retryable status, or once retries run out.
        """

        policy = self._policy_for(max_retries, initial_delay_ms, backoff_factor)
        attempts = 0
        retrying = AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(policy.max_retries + 1),
            wait=self._wait_strategy(policy),
            retry=retry_if_exception(_is_retryable),
            sleep=self._sleep,
            before_sleep=self._log_retry(url),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    response = await self._client.post(url, headers=dict(headers or {}), json=body)
                    return self._decode_response(response)
        except _RetryableStatusError as exc:
            raise ApiRequestError(
                f"{exc.message} (gave up after {attempts} attempt(s))",
                status_code=exc.status_code,
                body=exc.body,
                attempts=attempts,
            ) from exc
        except httpx.TransportError as exc:
            raise ApiRequestError(
                f"Request to {url} failed after {attempts} attempt(s): {exc}",
                attempts=attempts,
            ) from exc
        raise ApiRequestError(f"Request to {url} produced no response")  # pragma: no cover

    async def stream(
        self,
        url: str,
        headers: Mapping[str, str] | None,
        body: Any,
        on_chunk: ChunkCallback,
        *,
        max_consecutive_errors: int = 10,
    ) -> int:
        """Open an event stream and feed each JSON payload to ``on_chunk``.

        ``on_chunk(payload, done)`` is called once per decoded payload with
        ``done=False`` and a final time with ``(None, True)``. Malformed frames
        are repaired when possible and skipped otherwise.

        Returns:
            The number of payloads delivered.

        Raises:
            ApiRequestError: When the server answers with status >= 400.
            StreamError: After ``max_consecutive_errors`` malformed frames in a row.
        """

        delivered = 0
        consecutive_errors = 0
        decoder = SSEDecoder()
        async with self._client.stream("POST", url, headers=dict(headers or {}), json=body) as response:
            if response.status_code >= 400:
                text = (await response.aread()).decode("utf-8", errors="replace")
                raise ApiRequestError(
                    _error_message(response.status_code, text),
                    status_code=response.status_code,
                    body=text[:_BODY_EXCERPT_CHARS],
                )
            async for line in response.aiter_lines():
                event = decoder.feed(line)
                if event is None:
                    continue
                if event.data.strip() == DONE_SENTINEL:
                    await _invoke(on_chunk, None, True)
                    return delivered
                payload = self._decode_frame(event.data)
                if payload is None:
                    consecutive_errors += 1
                    LOGGER.debug("Skipping malformed stream frame (%s in a row)", consecutive_errors)
                    if consecutive_errors >= max_consecutive_errors:
                        raise StreamError(
                            f"Aborting stream after {consecutive_errors} consecutive malformed frames"
                        )
                    continue
                consecutive_errors = 0
                delivered += 1
                await _invoke(on_chunk, payload, False)

            trailing = decoder.flush()
            if trailing is not None and trailing.data.strip() != DONE_SENTINEL:
                payload = self._decode_frame(trailing.data)
                if payload is not None:
                    delivered += 1
                    await _invoke(on_chunk, payload, False)
        await _invoke(on_chunk, None, True)
        return delivered

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> HttpTransport:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _policy_for(
        self,
        max_retries: int | None,
        initial_delay_ms: float | None,
        backoff_factor: float | None,
    ) -> RetryPolicy:
        base = self._retry_policy
        return RetryPolicy(
            max_retries=base.max_retries if max_retries is None else max_retries,
            initial_delay_ms=base.initial_delay_ms if initial_delay_ms is None else initial_delay_ms,
            backoff_factor=base.backoff_factor if backoff_factor is None else backoff_factor,
            max_delay_ms=base.max_delay_ms,
            respect_retry_after=base.respect_retry_after,
        ).clamp()

    @staticmethod
    def _wait_strategy(policy: RetryPolicy) -> Callable[[RetryCallState], float]:
        def _wait(retry_state: RetryCallState) -> float:
            outcome = retry_state.outcome
            exc = outcome.exception() if outcome is not None else None
            if policy.respect_retry_after and isinstance(exc, _RetryableStatusError):
                if exc.retry_after is not None:
                    return min(exc.retry_after, policy.max_delay_ms / 1000.0)
            return policy.delay_for(retry_state.attempt_number - 1) / 1000.0

        return _wait

    @staticmethod
    def _log_retry(url: str) -> Callable[[RetryCallState], None]:
        def _before_sleep(retry_state: RetryCallState) -> None:
            outcome = retry_state.outcome
            exc = outcome.exception() if outcome is not None else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            status = getattr(exc, "status_code", None)
            LOGGER.warning(
                "Request to %s failed (attempt %s, status %s); retrying in %.2fs",
                url,
                retry_state.attempt_number,
                status,
                delay,
            )
            telemetry_service.emit(
                "transport.retry",
                {"url": url, "attempt": retry_state.attempt_number, "status": status, "delay": delay},
            )

        return _before_sleep

    @staticmethod
    def _decode_response(response: httpx.Response) -> Any:
        status = response.status_code
        text = response.text
        if status == 429 or status >= 500:
            raise _RetryableStatusError(
                _error_message(status, text),
                status_code=status,
                body=text[:_BODY_EXCERPT_CHARS],
                retry_after=parse_retry_after(response.headers),
            )
        if not response.is_success:
            raise ApiRequestError(
                _error_message(status, text),
                status_code=status,
                body=text[:_BODY_EXCERPT_CHARS],
            )
        if not text.strip():
            return {}
        try:
            return json.loads(text)
        except ValueError:
            LOGGER.debug("Response body from %s is not valid JSON; attempting repair", response.url)
        repaired = safe_parse_json(text)
        if isinstance(repaired, (dict, list)):
            return repaired
        return {"_raw_response": text}

    @staticmethod
    def _decode_frame(data: str) -> Any:
        try:
            return json.loads(data)
        except ValueError:
            pass
        repaired = safe_parse_json(data)
        if isinstance(repaired, (dict, list)):
            return repaired
        return None


async def _invoke(callback: ChunkCallback, payload: Any, done: bool) -> None:
    result = callback(payload, done)
    if inspect.isawaitable(result):
        await result
