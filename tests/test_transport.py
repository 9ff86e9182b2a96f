"""Tests for ai/transport.py."""

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from agentrelay.ai.ai_types import RetryPolicy
from agentrelay.ai.errors import ApiRequestError, StreamError
from agentrelay.ai.transport import HttpTransport, SSEDecoder, parse_retry_after
from agentrelay.services import telemetry


# -----------------------------------------------------------------------------
# Test Fixtures and Helpers
# -----------------------------------------------------------------------------


class _FakeSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class _ScriptedHandler:
    """Returns the queued responses in order and records requests."""

    def __init__(self, *responses: httpx.Response | Exception) -> None:
        self._responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if isinstance(item, Exception):
            raise item
        return item


def make_transport(handler: Any, sleep: _FakeSleep | None = None, **policy: Any) -> HttpTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpTransport(
        client=client,
        retry_policy=RetryPolicy(**policy) if policy else None,
        sleep=sleep or _FakeSleep(),
    )


def sse_body(*frames: str) -> bytes:
    return "".join(f"data: {frame}\n\n" for frame in frames).encode("utf-8")


# -----------------------------------------------------------------------------
# Tests: post
# -----------------------------------------------------------------------------


class TestPost:
    """Retry and decoding behaviour of HttpTransport.post."""

    @pytest.mark.asyncio
    async def test_returns_parsed_json(self) -> None:
        handler = _ScriptedHandler(httpx.Response(200, json={"ok": True}))
        transport = make_transport(handler)

        result = await transport.post("https://api.test/v1", {"Authorization": "Bearer x"}, {"q": 1})

        assert result == {"ok": True}
        assert json.loads(handler.requests[0].content) == {"q": 1}
        assert handler.requests[0].headers["authorization"] == "Bearer x"

    @pytest.mark.asyncio
    async def test_empty_body_returns_empty_dict(self) -> None:
        transport = make_transport(_ScriptedHandler(httpx.Response(200, content=b"")))
        assert await transport.post("https://api.test", {}, {}) == {}

    @pytest.mark.asyncio
    async def test_truncated_body_is_repaired(self) -> None:
        transport = make_transport(_ScriptedHandler(httpx.Response(200, content=b'{"text": "partial')))
        assert await transport.post("https://api.test", {}, {}) == {"text": "partial"}

    @pytest.mark.asyncio
    async def test_unrepairable_body_is_returned_raw(self) -> None:
        transport = make_transport(_ScriptedHandler(httpx.Response(200, content=b"<html>oops</html>")))
        assert await transport.post("https://api.test", {}, {}) == {"_raw_response": "<html>oops</html>"}

    @pytest.mark.asyncio
    async def test_retries_throttling_with_exponential_backoff(self) -> None:
        sleep = _FakeSleep()
        handler = _ScriptedHandler(
            httpx.Response(429, json={"error": {"message": "slow down"}}),
            httpx.Response(503, text="unavailable"),
            httpx.Response(200, json={"done": 1}),
        )
        transport = make_transport(handler, sleep)

        result = await transport.post(
            "https://api.test", {}, {}, max_retries=3, initial_delay_ms=100, backoff_factor=2.0
        )

        assert result == {"done": 1}
        assert len(handler.requests) == 3
        assert sleep.delays == pytest.approx([0.1, 0.2])

    @pytest.mark.asyncio
    async def test_retry_after_header_takes_precedence(self) -> None:
        sleep = _FakeSleep()
        handler = _ScriptedHandler(
            httpx.Response(429, headers={"retry-after-ms": "250"}),
            httpx.Response(200, json={}),
        )
        transport = make_transport(handler, sleep)

        await transport.post("https://api.test", {}, {}, max_retries=2, initial_delay_ms=5000)

        assert sleep.delays == pytest.approx([0.25])

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_with_status(self) -> None:
        sleep = _FakeSleep()
        handler = _ScriptedHandler(httpx.Response(500, json={"error": {"message": "boom"}}))
        transport = make_transport(handler, sleep)

        with pytest.raises(ApiRequestError) as excinfo:
            await transport.post("https://api.test", {}, {}, max_retries=2, initial_delay_ms=10)

        assert excinfo.value.status_code == 500
        assert excinfo.value.attempts == 3
        assert "boom" in str(excinfo.value)
        assert len(handler.requests) == 3
        assert len(sleep.delays) == 2

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self) -> None:
        handler = _ScriptedHandler(httpx.Response(401, json={"error": {"message": "bad key"}}))
        transport = make_transport(handler)

        with pytest.raises(ApiRequestError) as excinfo:
            await transport.post("https://api.test", {}, {}, max_retries=3)

        assert excinfo.value.status_code == 401
        assert len(handler.requests) == 1

    @pytest.mark.asyncio
    async def test_connection_errors_are_retried_then_raised(self) -> None:
        handler = _ScriptedHandler(httpx.ConnectError("refused"))
        transport = make_transport(handler)

        with pytest.raises(ApiRequestError) as excinfo:
            await transport.post("https://api.test", {}, {}, max_retries=1, initial_delay_ms=1)

        assert excinfo.value.status_code is None
        assert len(handler.requests) == 2

    @pytest.mark.asyncio
    async def test_retry_emits_telemetry(self) -> None:
        sink = telemetry.InMemoryEventSink(["transport.retry"])
        handler = _ScriptedHandler(httpx.Response(502), httpx.Response(200, json={}))
        transport = make_transport(handler)

        await transport.post("https://api.test", {}, {}, max_retries=1, initial_delay_ms=1)

        assert sink.names() == ["transport.retry"]
        assert sink.tail()[0].payload["status"] == 502


def test_parse_retry_after_prefers_milliseconds() -> None:
    assert parse_retry_after({"retry-after-ms": "1500", "retry-after": "9"}) == pytest.approx(1.5)
    assert parse_retry_after({"retry-after": "2"}) == pytest.approx(2.0)
    assert parse_retry_after({"retry-after": "Wed, 21 Oct 2015 07:28:00 GMT"}) is None
    assert parse_retry_after({}) is None


# -----------------------------------------------------------------------------
# Tests: SSE decoding
# -----------------------------------------------------------------------------


def test_sse_decoder_joins_multiline_data_and_ignores_comments() -> None:
    decoder = SSEDecoder()
    assert decoder.feed(": keep-alive") is None
    assert decoder.feed("event: message") is None
    assert decoder.feed("data: {\"a\":") is None
    assert decoder.feed("data: 1}") is None
    event = decoder.feed("")
    assert event is not None
    assert event.event == "message"
    assert json.loads(event.data) == {"a": 1}
    assert decoder.feed("") is None


# -----------------------------------------------------------------------------
# Tests: stream
# -----------------------------------------------------------------------------


class TestStream:
    """Event-stream consumption."""

    @pytest.mark.asyncio
    async def test_delivers_payloads_until_done(self) -> None:
        body = sse_body('{"n": 1}', '{"n": 2}', "[DONE]", '{"n": 3}')
        transport = make_transport(_ScriptedHandler(httpx.Response(200, content=body)))
        chunks: list[tuple[Any, bool]] = []

        delivered = await transport.stream("https://api.test", {}, {}, lambda p, d: chunks.append((p, d)))

        assert delivered == 2
        assert chunks == [({"n": 1}, False), ({"n": 2}, False), (None, True)]

    @pytest.mark.asyncio
    async def test_async_callback_and_malformed_frames(self) -> None:
        body = sse_body('{"n": 1}', "not json at all", '{"n": 2')
        transport = make_transport(_ScriptedHandler(httpx.Response(200, content=body)))
        chunks: list[Any] = []

        async def on_chunk(payload: Any, done: bool) -> None:
            chunks.append(payload)

        delivered = await transport.stream("https://api.test", {}, {}, on_chunk)

        assert delivered == 2
        assert chunks == [{"n": 1}, {"n": 2}, None]

    @pytest.mark.asyncio
    async def test_circuit_breaker_aborts_after_consecutive_errors(self) -> None:
        body = sse_body(*["garbage"] * 4)
        transport = make_transport(_ScriptedHandler(httpx.Response(200, content=body)))

        with pytest.raises(StreamError):
            await transport.stream("https://api.test", {}, {}, lambda p, d: None, max_consecutive_errors=3)

    @pytest.mark.asyncio
    async def test_error_status_raises(self) -> None:
        transport = make_transport(_ScriptedHandler(httpx.Response(400, json={"error": {"message": "nope"}})))

        with pytest.raises(ApiRequestError) as excinfo:
            await transport.stream("https://api.test", {}, {}, lambda p, d: None)

        assert excinfo.value.status_code == 400
        assert "nope" in str(excinfo.value)
