"""Lightweight Codex execution over the OpenAI Responses API.

Used for requests that need no tools and no MCP servers when an API key
is available, so no CLI has to be installed. Streams server-sent events
with httpx and maps them onto ProviderMessage values.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterator
from typing import Any

import httpx

from conduit.integrations.backends.errors import (
    BackendNotAuthenticatedError,
    BackendRateLimitError,
    BackendTimeoutError,
    ErrorKind,
    ProviderError,
)
from conduit.integrations.backends.types import (
    ExecutionRequest,
    ProviderMessage,
    ResultMessage,
    extract_text,
    format_history_as_text,
    text_message,
)

logger = logging.getLogger(__name__)

OPENAI_BASE_URL_ENV = "OPENAI_BASE_URL"
DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
RESPONSES_PATH = "/responses"

# Connect quickly; streamed responses may take long between events
_TIMEOUT = httpx.Timeout(30.0, read=300.0)

_SSE_DATA_PREFIX = "data:"
_SSE_DONE = "[DONE]"

EVENT_TEXT_DONE = "response.output_text.done"
EVENT_COMPLETED = "response.completed"
EVENT_FAILED = "response.failed"
EVENT_INCOMPLETE = "response.incomplete"
EVENT_ERROR = "error"


def build_responses_payload(
    request: ExecutionRequest,
    model: str,
    system_prompt: str | None,
    reasoning_effort: str | None = None,
) -> dict[str, Any]:
    """Build the JSON body for a streamed Responses API call."""
    history = format_history_as_text(request.conversation_history)
    payload: dict[str, Any] = {
        "model": model,
        "input": f"{history}{extract_text(request.prompt)}",
        "stream": True,
    }
    if system_prompt:
        payload["instructions"] = system_prompt
    if reasoning_effort:
        payload["reasoning"] = {"effort": reasoning_effort}

    output_format = request.output_format
    if output_format and output_format.get("type") == "json_schema":
        schema = output_format.get("schema")
        if isinstance(schema, dict):
            payload["text"] = {
                "format": {"type": "json_schema", "name": "output", "schema": schema}
            }
    return payload


def iter_sse_events(lines: Iterator[str]) -> Iterator[dict[str, Any]]:
    """Parse ``data:`` lines of an SSE stream into JSON objects.

    ``event:`` lines are ignored since every Responses API payload repeats
    its event name in a ``type`` field.
    """
    for line in lines:
        if not line.startswith(_SSE_DATA_PREFIX):
            continue
        data = line[len(_SSE_DATA_PREFIX) :].strip()
        if not data or data == _SSE_DONE:
            continue
        try:
            event = json.loads(data)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed SSE payload", extra={"excerpt": data[:500]})
            continue
        if isinstance(event, dict):
            yield event


def _raise_for_status(response: httpx.Response) -> None:
    if response.status_code < 400:
        return
    body = response.read().decode("utf-8", errors="replace")
    message = f"OpenAI API error {response.status_code}: {body[:500]}"
    if response.status_code in (401, 403):
        raise BackendNotAuthenticatedError(
            message,
            suggestion="Check that your OPENAI_API_KEY is set correctly",
        )
    if response.status_code == 429:
        raise BackendRateLimitError(message, output=body, backend_name="codex")
    if response.status_code == 404:
        raise ProviderError(message, kind=ErrorKind.MODEL_UNAVAILABLE)
    raise ProviderError(message, recoverable=response.status_code >= 500)


def _event_error_text(event: dict[str, Any]) -> str:
    error = event.get("error")
    if error is None and isinstance(event.get("response"), dict):
        error = event["response"].get("error")
    if isinstance(error, dict):
        return str(error.get("message") or error.get("code") or "Codex SDK error")
    if isinstance(error, str) and error:
        return error
    return str(event.get("message") or "Codex SDK error")


def execute_sdk_query(
    request: ExecutionRequest,
    *,
    api_key: str,
    model: str,
    system_prompt: str | None = None,
    reasoning_effort: str | None = None,
    client: httpx.Client | None = None,
) -> Iterator[ProviderMessage]:
    """Stream one request through the Responses API.

    Yields one text message per completed output part and a final result.
    Cancelling the request's token closes the HTTP response, which ends
    the stream without a message.

    Raises:
        ProviderError: On HTTP errors or a failed response.
        BackendTimeoutError: When the API stops answering.
        httpx.HTTPError: On other transport failures.
    """
    token = request.cancellation
    base_url = os.environ.get(OPENAI_BASE_URL_ENV) or DEFAULT_OPENAI_BASE_URL
    payload = build_responses_payload(request, model, system_prompt, reasoning_effort)
    headers = {
        "Authorization": f"Bearer {api_key}",
        "Accept": "text/event-stream",
    }

    owns_client = client is None
    http = client or httpx.Client(timeout=_TIMEOUT)
    try:
        with http.stream(
            "POST", f"{base_url.rstrip('/')}{RESPONSES_PATH}", json=payload, headers=headers
        ) as response:
            unregister = token.add_callback(response.close) if token is not None else None
            try:
                _raise_for_status(response)
                texts: list[str] = []
                for event in iter_sse_events(response.iter_lines()):
                    if token is not None and token.cancelled:
                        return
                    event_type = event.get("type")

                    if event_type == EVENT_TEXT_DONE:
                        text = event.get("text")
                        if isinstance(text, str) and text:
                            texts.append(text)
                            yield text_message(text, session_id=request.session_id)
                    elif event_type == EVENT_COMPLETED:
                        yield ResultMessage(
                            subtype="success",
                            result="\n".join(texts) or None,
                            session_id=request.session_id,
                        )
                        return
                    elif event_type in (EVENT_FAILED, EVENT_INCOMPLETE, EVENT_ERROR):
                        raise ProviderError(_event_error_text(event))
            finally:
                if unregister is not None:
                    unregister()
    except httpx.TimeoutException as e:
        raise BackendTimeoutError(
            f"OpenAI API timed out: {e or type(e).__name__}",
            timeout_seconds=_TIMEOUT.read,
        ) from e
    finally:
        if owns_client:
            http.close()


__all__ = [
    "build_responses_payload",
    "iter_sse_events",
    "execute_sdk_query",
]
