"""
AI client factory

Returns an AsyncOpenAI client plus the provider-specific keyword
arguments to merge into ``chat.completions.create``. Any OpenAI-compatible
endpoint works through ``OPENAI_BASE_URL``.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from openai import AsyncOpenAI

from jobtracker.config import get_settings

logger = logging.getLogger(__name__)

REASONING_MODEL_PREFIXES = ("o1", "o3", "o4", "gpt-5")


def supports_reasoning_effort(model: str) -> bool:
    return model.lower().startswith(REASONING_MODEL_PREFIXES)


def get_ai_client(
    model: str,
    reasoning_effort: str = "medium",
    provider_id: Optional[str] = None,
) -> Tuple[AsyncOpenAI, Dict[str, Any]]:
    settings = get_settings()
    if not settings.openai_api_key and not settings.openai_base_url:
        raise ValueError("OPENAI_API_KEY is not configured")

    # Self-hosted OpenAI-compatible endpoints usually ignore the key
    client = AsyncOpenAI(
        api_key=settings.openai_api_key or "not-needed",
        base_url=settings.openai_base_url or None,
    )

    request_options: Dict[str, Any] = {"model": model}
    if supports_reasoning_effort(model):
        request_options["reasoning_effort"] = reasoning_effort
    else:
        request_options["temperature"] = 0.1

    logger.debug(f"AI client for provider={provider_id or 'default'} model={model}")
    return client, request_options
