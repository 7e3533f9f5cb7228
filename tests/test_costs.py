from __future__ import annotations

import pytest

from deskpilot.runtime.llm.adapters.anthropic import AnthropicAdapter
from deskpilot.runtime.llm.adapters.gemini import GeminiAdapter
from deskpilot.runtime.llm.costs import GEMINI_CACHE_READ_FRACTION, build_usage_report, compute_message_cost
from deskpilot.runtime.llm.types import LLMUsage, Model


MODEL = Model(id="m1", provider_id="p", input_cost_per_token=0.001, output_cost_per_token=0.002)


def test_cost_uses_input_rate_for_unset_cache_write():
    cost = compute_message_cost(MODEL, sent_tokens=100, received_tokens=10, cache_write_tokens=50)
    assert cost == pytest.approx(100 * 0.001 + 10 * 0.002 + 50 * 0.001)


def test_cache_read_defaults_to_zero_or_vendor_fraction():
    assert compute_message_cost(MODEL, sent_tokens=0, received_tokens=0, cache_read_tokens=1000) == 0.0
    cost = compute_message_cost(
        MODEL, sent_tokens=0, received_tokens=0, cache_read_tokens=1000, cache_read_fraction=GEMINI_CACHE_READ_FRACTION
    )
    assert cost == pytest.approx(1000 * 0.001 * 0.25)


def test_usage_report_excludes_cache_reads_from_sent_tokens():
    usage = LLMUsage(input_tokens=1200, output_tokens=30, cache_read_input_tokens=200)
    report = build_usage_report(MODEL, usage, task_total_cost=1.0)

    assert report.model == "p/m1"
    assert report.sent_tokens == 1000
    assert report.received_tokens == 30
    assert report.cache_read_tokens == 200
    assert report.context_tokens == 1230
    assert report.agent_total_cost == pytest.approx(1.0 + report.message_cost)


def test_missing_usage_is_free():
    report = build_usage_report(MODEL, None, task_total_cost=0.5)
    assert report.message_cost == 0.0
    assert report.agent_total_cost == 0.5


def test_running_total_never_decreases():
    total = 0.0
    for tokens in (10, 0, 250, 3):
        report = build_usage_report(MODEL, LLMUsage(input_tokens=tokens, output_tokens=tokens), task_total_cost=total)
        assert report.message_cost >= 0.0
        assert report.agent_total_cost >= total
        total = report.agent_total_cost


def test_gemini_adapter_prices_cache_reads():
    usage = LLMUsage(input_tokens=1000, output_tokens=0, cache_read_input_tokens=1000)
    gemini = GeminiAdapter().compute_usage(MODEL, usage, task_total_cost=0.0)
    anthropic = AnthropicAdapter().compute_usage(MODEL, usage, task_total_cost=0.0)

    assert gemini.message_cost == pytest.approx(1000 * 0.001 * GEMINI_CACHE_READ_FRACTION)
    assert anthropic.message_cost == 0.0
