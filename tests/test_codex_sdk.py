"""Tests for conduit.integrations.backends.codex_sdk module."""

import json

import httpx
import pytest

from conduit.integrations.backends.codex_sdk import (
    build_responses_payload,
    execute_sdk_query,
    iter_sse_events,
)
from conduit.integrations.backends.errors import (
    BackendNotAuthenticatedError,
    BackendRateLimitError,
    BackendTimeoutError,
    ErrorKind,
    ProviderError,
)
from conduit.integrations.backends.types import (
    ConversationMessage,
    ResultMessage,
    text_message,
)
from conduit.platform.cancellation import CancellationToken


def sse(*events) -> bytes:
    lines = []
    for event in events:
        lines.append(f"event: {event['type']}")
        lines.append(f"data: {json.dumps(event)}")
        lines.append("")
    lines.append("data: [DONE]")
    return ("\n".join(lines) + "\n").encode()


def mock_client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


class TestBuildResponsesPayload:
    def test_minimal(self, make_request):
        payload = build_responses_payload(make_request(prompt="Hi"), "gpt-5.1", None)

        assert payload == {"model": "gpt-5.1", "input": "Hi", "stream": True}

    def test_full(self, make_request):
        request = make_request(
            prompt="Summarize",
            conversation_history=[ConversationMessage(role="assistant", content="Sure")],
            output_format={"type": "json_schema", "schema": {"type": "object"}},
        )

        payload = build_responses_payload(request, "gpt-5.1", "Be terse", "high")

        assert payload["instructions"] == "Be terse"
        assert payload["reasoning"] == {"effort": "high"}
        assert payload["input"].startswith("Previous conversation:")
        assert payload["input"].endswith("Summarize")
        assert payload["text"]["format"]["schema"] == {"type": "object"}


class TestIterSseEvents:
    def test_parses_data_lines(self, caplog):
        lines = iter(
            [
                "event: response.created",
                'data: {"type": "response.created"}',
                "",
                "data: not json",
                "data: [1, 2]",
                "data: [DONE]",
            ]
        )

        assert list(iter_sse_events(lines)) == [{"type": "response.created"}]
        assert "Skipping malformed SSE payload" in caplog.text


class TestExecuteSdkQuery:
    def test_streams_text_and_result(self, make_request, monkeypatch):
        monkeypatch.setenv("OPENAI_BASE_URL", "https://proxy.local/v1/")
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                content=sse(
                    {"type": "response.output_text.delta", "delta": "Hel"},
                    {"type": "response.output_text.done", "text": "Hello"},
                    {"type": "response.output_text.done", "text": "World"},
                    {"type": "response.completed", "response": {}},
                ),
            )

        messages = list(
            execute_sdk_query(
                make_request(prompt="Greet", session_id="s1"),
                api_key="sk-test",
                model="gpt-5.1",
                client=mock_client(handler),
            )
        )

        assert seen["url"] == "https://proxy.local/v1/responses"
        assert seen["auth"] == "Bearer sk-test"
        assert seen["body"]["input"] == "Greet"
        assert messages == [
            text_message("Hello", session_id="s1"),
            text_message("World", session_id="s1"),
            ResultMessage(subtype="success", result="Hello\nWorld", session_id="s1"),
        ]

    def test_failed_response_raises(self, make_request):
        def handler(request):
            return httpx.Response(
                200,
                content=sse(
                    {"type": "response.failed", "response": {"error": {"message": "overloaded"}}}
                ),
            )

        with pytest.raises(ProviderError, match="overloaded"):
            list(
                execute_sdk_query(
                    make_request(), api_key="k", model="gpt-5.1", client=mock_client(handler)
                )
            )

    @pytest.mark.parametrize(
        ("status", "error_type", "kind"),
        [
            (401, BackendNotAuthenticatedError, ErrorKind.NOT_AUTHENTICATED),
            (429, BackendRateLimitError, ErrorKind.RATE_LIMITED),
            (404, ProviderError, ErrorKind.MODEL_UNAVAILABLE),
            (500, ProviderError, ErrorKind.UNKNOWN_ERROR),
        ],
    )
    def test_http_errors(self, make_request, status, error_type, kind):
        def handler(request):
            return httpx.Response(status, content=b'{"error": "nope"}')

        with pytest.raises(error_type) as exc_info:
            list(
                execute_sdk_query(
                    make_request(), api_key="k", model="gpt-5.1", client=mock_client(handler)
                )
            )

        assert exc_info.value.kind == kind
        assert f"OpenAI API error {status}" in str(exc_info.value)

    def test_read_timeout_raises_timeout_error(self, make_request):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        with pytest.raises(BackendTimeoutError, match="OpenAI API timed out") as exc_info:
            list(
                execute_sdk_query(
                    make_request(), api_key="k", model="gpt-5.1", client=mock_client(handler)
                )
            )

        assert exc_info.value.kind == ErrorKind.TIMEOUT
        assert exc_info.value.recoverable is True
        assert exc_info.value.timeout_seconds == 300.0

    def test_cancellation_ends_stream(self, make_request):
        token = CancellationToken()

        def handler(request):
            return httpx.Response(
                200,
                content=sse(
                    {"type": "response.output_text.done", "text": "first"},
                    {"type": "response.output_text.done", "text": "second"},
                    {"type": "response.completed"},
                ),
            )

        stream = execute_sdk_query(
            make_request(cancellation=token),
            api_key="k",
            model="gpt-5.1",
            client=mock_client(handler),
        )

        assert next(stream) == text_message("first")
        token.cancel()
        assert list(stream) == []
