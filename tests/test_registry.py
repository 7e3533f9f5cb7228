from __future__ import annotations

import pytest

from deskpilot.runtime.errors import ConfigurationError
from deskpilot.runtime.llm.registry import merge_overrides
from deskpilot.runtime.llm.types import Model, ModelOverrides

from conftest import FakeAdapter, fake_profile, make_registry


def test_merge_overrides_defined_values_win_and_clearable_fields_reset():
    catalog = Model(
        id="m1",
        provider_id="fake",
        max_input_tokens=1000,
        max_output_tokens=512,
        input_cost_per_token=0.5,
        temperature=0.7,
    )
    override = ModelOverrides(provider_id="fake", model_id="m1", max_input_tokens=2000)

    merged = merge_overrides(catalog, override)

    assert merged.max_input_tokens == 2000
    assert merged.input_cost_per_token == 0.5
    assert merged.max_output_tokens is None
    assert merged.temperature is None
    assert merge_overrides(catalog, None) is catalog


@pytest.mark.asyncio
async def test_load_applies_overrides_and_appends_custom_models():
    adapter = FakeAdapter(max_input_tokens=1000)
    registry = make_registry(
        adapter,
        fake_profile(models=["m1", "m2"]),
        overrides=[
            ModelOverrides(provider_id="fake", model_id="m1", max_output_tokens=256),
            ModelOverrides(provider_id="fake", model_id="custom", max_input_tokens=42, is_custom=True),
            ModelOverrides(provider_id="fake", model_id="ghost"),
        ],
    )

    await registry.load_provider_models()

    assert [m.id for m in registry.models("fake")] == ["m1", "m2", "custom"]
    assert registry.find("fake", "m1").max_output_tokens == 256
    assert registry.find("fake", "custom").is_custom
    assert registry.find("fake", "ghost") is None


@pytest.mark.asyncio
async def test_disabled_provider_is_skipped():
    adapter = FakeAdapter()
    registry = make_registry(adapter, fake_profile("on"), fake_profile("off", enabled=False))

    await registry.load_provider_models()

    assert adapter.load_calls == ["on"]
    assert registry.models("off") == []
    with pytest.raises(ConfigurationError):
        registry.create_model("off", "m1")


@pytest.mark.asyncio
async def test_load_failure_records_error():
    adapter = FakeAdapter()
    adapter.fail_with = "401 unauthorized"
    registry = make_registry(adapter)

    await registry.load_provider_models()

    assert registry.provider_errors() == {"fake": "401 unauthorized"}
    assert registry.models() == []


def test_resolve_falls_back_to_placeholder():
    registry = make_registry(FakeAdapter())
    model = registry.resolve("fake", "unknown")
    assert model == Model(id="unknown", provider_id="fake")


def test_unknown_provider_raises_configuration_error():
    registry = make_registry(FakeAdapter())
    with pytest.raises(ConfigurationError):
        registry.create_model("nope", "m1")


@pytest.mark.asyncio
async def test_call_options_merge_profile_and_model_overrides():
    profile = fake_profile(
        options={"reasoning_effort": "low", "top_p": 0.9},
        parameters={"user": "me"},
        disable_streaming=True,
    )
    registry = make_registry(
        FakeAdapter(),
        profile,
        overrides=[
            ModelOverrides(
                provider_id="fake",
                model_id="m1",
                provider_overrides={
                    "options": {"reasoning_effort": "high"},
                    "parameters": {"seed": 1},
                    "disableStreaming": False,
                },
            )
        ],
    )
    await registry.load_provider_models()

    options = registry.compute_call_options("fake", "m1")
    assert options.options == {"reasoning_effort": "high", "top_p": 0.9}
    assert options.parameters == {"user": "me", "seed": 1}
    assert options.streaming_disabled is False

    # No model-level flag: the provider setting applies.
    fallback = registry.compute_call_options("fake", "unknown")
    assert fallback.streaming_disabled is True
    assert fallback.options == {"reasoning_effort": "low", "top_p": 0.9}


@pytest.mark.asyncio
async def test_providers_changed_reloads_changed_and_drops_removed():
    adapter = FakeAdapter()
    registry = make_registry(adapter, fake_profile("a"), fake_profile("b"))
    await registry.load_provider_models()
    adapter.load_calls.clear()

    changed = await registry.providers_changed([fake_profile("a"), fake_profile("c", models=["x"])])

    assert changed is True
    assert adapter.load_calls == ["c"]
    assert registry.models("b") == []
    assert [m.id for m in registry.models("c")] == ["x"]
    assert await registry.providers_changed([fake_profile("a"), fake_profile("c", models=["x"])]) is False


@pytest.mark.asyncio
async def test_model_list_is_swapped_not_mutated():
    adapter = FakeAdapter()
    registry = make_registry(adapter)
    await registry.load_provider_models()
    before = registry.models("fake")

    await registry.providers_changed([fake_profile(models=["m1", "m9"])])

    assert [m.id for m in before] == ["m1"]
    assert [m.id for m in registry.models("fake")] == ["m1", "m9"]


@pytest.mark.asyncio
async def test_set_overrides_reloads_affected_providers():
    adapter = FakeAdapter()
    registry = make_registry(adapter)
    await registry.load_provider_models()

    await registry.set_overrides([ModelOverrides(provider_id="fake", model_id="m1", max_input_tokens=77)])

    assert registry.find("fake", "m1").max_input_tokens == 77
    assert registry.overrides()[0].max_input_tokens == 77
