"""OpenRouter API client for making LLM requests."""

import logging
from typing import Any, Dict, List, Optional

import httpx

from . import config

logger = logging.getLogger(__name__)


async def query_model(
    model: str,
    messages: List[Dict[str, str]],
    system_prompt: Optional[str] = None,
    timeout: float = 30.0
) -> Optional[Dict[str, Any]]:
    """
    Query a single model via OpenRouter API.

    Args:
        model: OpenRouter model identifier (e.g., "openai/gpt-4o")
        messages: List of message dicts with 'role' and 'content'
        system_prompt: Optional system prompt to prepend
        timeout: Request timeout in seconds

    Returns:
        Response dict with 'content', or None if failed
    """
    if not config.OPENROUTER_API_KEY:
        logger.warning("OPENROUTER_API_KEY is not set, skip model query")
        return None

    headers = {
        "Authorization": f"Bearer {config.OPENROUTER_API_KEY}",
        "Content-Type": "application/json",
    }

    # Build messages with optional system prompt
    final_messages = []
    if system_prompt:
        final_messages.append({"role": "system", "content": system_prompt})
    final_messages.extend(messages)

    payload = {
        "model": model,
        "messages": final_messages,
    }

    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(
                config.OPENROUTER_API_URL,
                headers=headers,
                json=payload
            )
            response.raise_for_status()

            data = response.json()
            message = data['choices'][0]['message']

            return {'content': message.get('content')}

    except (httpx.HTTPError, KeyError, IndexError, ValueError) as e:
        logger.error(f"Error querying model {model}: {e}")
        return None
