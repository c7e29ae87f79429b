"""Remote model discovery through vendor REST APIs.

Each function takes an explicit API key and returns ModelDefinition values
attributed to the provider that would serve them. Discovery is best-effort:
any failure (network, auth, timeout, bad JSON) yields an empty list.
"""

from __future__ import annotations

import logging
import os
from typing import Any

import httpx

from conduit.integrations.backends.types import ModelDefinition

logger = logging.getLogger(__name__)

_TIMEOUT = 5.0  # seconds

ANTHROPIC_MODELS_URL = "https://api.anthropic.com/v1/models"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"

_OPENAI_INCLUDE_PREFIXES = ("gpt-4", "gpt-5", "o1", "o3", "o4")
_OPENAI_EXCLUDE_KEYWORDS = ("embedding", "tts", "whisper", "dall-e", "audio", "realtime")


def _get_json(url: str, headers: dict[str, str]) -> dict[str, Any]:
    resp = httpx.get(url, headers=headers, timeout=_TIMEOUT)
    resp.raise_for_status()
    data = resp.json()
    return data if isinstance(data, dict) else {}


def fetch_anthropic_models(api_key: str) -> list[ModelDefinition]:
    """List claude-* models from ``GET /v1/models``, served by the claude provider."""
    try:
        data = _get_json(
            ANTHROPIC_MODELS_URL,
            {"x-api-key": api_key, "anthropic-version": ANTHROPIC_VERSION},
        )
    except Exception:
        logger.debug("Failed to fetch Anthropic models", exc_info=True)
        return []

    models: list[ModelDefinition] = []
    for item in data.get("data", []):
        model_id = item.get("id", "")
        if not model_id.startswith("claude-"):
            continue
        models.append(
            ModelDefinition(
                id=model_id,
                name=item.get("display_name", model_id),
                model_string=model_id,
                provider="claude",
                supports_vision=True,
            )
        )
    return models


def fetch_openai_models(api_key: str) -> list[ModelDefinition]:
    """List chat models from the OpenAI API as ``codex-<id>`` definitions.

    Embedding, speech, image and realtime models are filtered out.
    """
    base_url = os.environ.get("OPENAI_BASE_URL") or DEFAULT_OPENAI_BASE_URL
    try:
        data = _get_json(
            f"{base_url.rstrip('/')}/models", {"Authorization": f"Bearer {api_key}"}
        )
    except Exception:
        logger.debug("Failed to fetch OpenAI models", exc_info=True)
        return []

    models: list[ModelDefinition] = []
    for item in data.get("data", []):
        model_id = item.get("id", "")
        if not model_id.startswith(_OPENAI_INCLUDE_PREFIXES):
            continue
        if any(kw in model_id.lower() for kw in _OPENAI_EXCLUDE_KEYWORDS):
            continue
        models.append(
            ModelDefinition(
                id=f"codex-{model_id}",
                name=model_id,
                model_string=model_id,
                provider="codex",
            )
        )
    return models


def discover_remote_models() -> list[ModelDefinition]:
    """Query every vendor whose API key is present in the environment."""
    models: list[ModelDefinition] = []
    anthropic_key = os.environ.get("ANTHROPIC_API_KEY")
    if anthropic_key:
        models.extend(fetch_anthropic_models(anthropic_key))
    openai_key = os.environ.get("OPENAI_API_KEY")
    if openai_key:
        models.extend(fetch_openai_models(openai_key))
    return models


__all__ = [
    "fetch_anthropic_models",
    "fetch_openai_models",
    "discover_remote_models",
]
