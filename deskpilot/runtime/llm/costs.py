from __future__ import annotations

from .types import LLMUsage, Model, UsageReport

GEMINI_CACHE_READ_FRACTION = 0.25


def compute_message_cost(
    model: Model,
    *,
    sent_tokens: int,
    received_tokens: int,
    cache_read_tokens: int = 0,
    cache_write_tokens: int = 0,
    cache_read_fraction: float | None = None,
) -> float:
    """
    Price one model call.

    An absent cache-write rate falls back to the input rate. An absent cache-read rate falls
    back to `cache_read_fraction` of the input rate when the vendor documents one, else zero.
    """

    input_rate = model.input_cost_per_token or 0.0
    output_rate = model.output_cost_per_token or 0.0
    cache_write_rate = model.cache_write_cost_per_token if model.cache_write_cost_per_token is not None else input_rate
    if model.cache_read_cost_per_token is not None:
        cache_read_rate = model.cache_read_cost_per_token
    elif cache_read_fraction is not None:
        cache_read_rate = input_rate * cache_read_fraction
    else:
        cache_read_rate = 0.0

    cost = (
        sent_tokens * input_rate
        + received_tokens * output_rate
        + cache_read_tokens * cache_read_rate
        + cache_write_tokens * cache_write_rate
    )
    return max(0.0, cost)


def build_usage_report(
    model: Model,
    usage: LLMUsage | None,
    *,
    task_total_cost: float,
    cache_read_fraction: float | None = None,
) -> UsageReport:
    """Shared usage contract: sent tokens exclude cache reads; the running total never decreases."""

    usage = usage or LLMUsage()
    prompt_tokens = usage.input_tokens or 0
    cache_read = usage.cache_read_input_tokens or 0
    cache_write = usage.cache_creation_input_tokens or 0
    sent = max(0, prompt_tokens - cache_read)
    received = usage.output_tokens or 0

    cost = compute_message_cost(
        model,
        sent_tokens=sent,
        received_tokens=received,
        cache_read_tokens=cache_read,
        cache_write_tokens=cache_write,
        cache_read_fraction=cache_read_fraction,
    )
    return UsageReport(
        model=model.key,
        sent_tokens=sent,
        received_tokens=received,
        cache_read_tokens=cache_read,
        cache_write_tokens=cache_write,
        message_cost=cost,
        agent_total_cost=max(0.0, task_total_cost) + cost,
    )
