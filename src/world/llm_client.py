"""Thin LLM client wrapping litellm.

Used only by the LLM brain. One call, no retained state: the result
(text, token usage, cost) is returned as a value. Retries are delegated to
litellm's num_retries; the brain adapter enforces the overall deadline.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import litellm

logger = logging.getLogger(__name__)

# Silence litellm's noisy default logging
litellm.suppress_debug_info = True


@dataclass
class LLMCallResult:
    """Result of one completion."""

    content: str
    usage: dict[str, int]
    cost: float
    model: str


def _usage(response: Any) -> dict[str, int]:
    usage = getattr(response, "usage", None)
    if usage is None:
        return {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}
    return {
        "prompt_tokens": int(usage.prompt_tokens or 0),
        "completion_tokens": int(usage.completion_tokens or 0),
        "total_tokens": int(usage.total_tokens or 0),
    }


def _cost(response: Any) -> float:
    """Cost via litellm's price table; 0.0 for models it does not know."""
    try:
        return float(litellm.completion_cost(completion_response=response))
    except Exception as e:  # litellm raises bare Exception for unmapped models
        logger.debug("No cost information for this completion: %s", e)
        return 0.0


def chat_messages(system_prompt: str, user_prompt: str) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_prompt},
    ]


def call_llm(
    model: str,
    messages: list[dict[str, str]],
    *,
    timeout: float = 15.0,
    num_retries: int = 0,
    **kwargs: Any,
) -> LLMCallResult:
    """Call an LLM via litellm.completion.

    Args:
        model: litellm model string (e.g., "gpt-4o-mini", "ollama/llama3")
        messages: Chat messages in OpenAI format
        timeout: Request timeout in seconds
        num_retries: Retries on transient failure
        **kwargs: Additional params passed to litellm.completion

    Returns:
        LLMCallResult with content, usage and cost
    """
    response = litellm.completion(
        model=model,
        messages=messages,
        timeout=timeout,
        num_retries=num_retries,
        **kwargs,
    )
    content: str = response.choices[0].message.content or ""
    usage = _usage(response)
    cost = _cost(response)
    logger.debug("LLM call: model=%s tokens=%d cost=$%.6f", model, usage["total_tokens"], cost)
    return LLMCallResult(content=content, usage=usage, cost=cost, model=model)
