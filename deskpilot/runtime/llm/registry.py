from __future__ import annotations

import asyncio
import logging
import threading
from typing import TYPE_CHECKING, Any, Iterable

from ..errors import ConfigurationError
from .adapters import default_adapters
from .adapters.base import CallableModel, ProviderAdapter
from .model_info import ModelInfoCatalog
from .types import CallOptions, LLMUsage, Model, ModelOverrides, ProviderKind, ProviderProfile, UsageReport

if TYPE_CHECKING:
    from ..tools.definitions import ToolDefinition

logger = logging.getLogger(__name__)

# Fields an override may set; `None` means "not set" except for the clearable pair below.
_OVERRIDE_FIELDS = (
    "max_input_tokens",
    "max_output_tokens_limit",
    "input_cost_per_token",
    "output_cost_per_token",
    "cache_read_cost_per_token",
    "cache_write_cost_per_token",
)
_CLEARABLE_FIELDS = ("max_output_tokens", "temperature")


def merge_overrides(catalog_model: Model, override: ModelOverrides | None) -> Model:
    """
    Compose a catalog model with a user override record.

    Defined override values win. `max_output_tokens` and `temperature` always take the
    override's value when a record exists, so an unset value clears them.
    """

    if override is None:
        return catalog_model
    update: dict[str, Any] = {}
    for name in _OVERRIDE_FIELDS:
        value = getattr(override, name)
        if value is not None:
            update[name] = value
    for name in _CLEARABLE_FIELDS:
        update[name] = getattr(override, name)
    if override.provider_overrides is not None:
        update["provider_overrides"] = dict(override.provider_overrides)
    update["is_custom"] = False
    return catalog_model.model_copy(update=update)


def model_from_override(override: ModelOverrides) -> Model:
    return Model(
        id=override.model_id,
        provider_id=override.provider_id,
        max_input_tokens=override.max_input_tokens,
        max_output_tokens=override.max_output_tokens,
        max_output_tokens_limit=override.max_output_tokens_limit,
        input_cost_per_token=override.input_cost_per_token,
        output_cost_per_token=override.output_cost_per_token,
        cache_read_cost_per_token=override.cache_read_cost_per_token,
        cache_write_cost_per_token=override.cache_write_cost_per_token,
        temperature=override.temperature,
        provider_overrides=dict(override.provider_overrides or {}),
        is_custom=True,
    )


def _enrich(model: Model, info) -> Model:
    if info is None:
        return model
    update: dict[str, Any] = {
        "max_input_tokens": model.max_input_tokens if model.max_input_tokens is not None else info.max_input_tokens,
        "max_output_tokens_limit": (
            model.max_output_tokens_limit if model.max_output_tokens_limit is not None else info.max_output_tokens
        ),
    }
    for name in ("input_cost_per_token", "output_cost_per_token", "cache_read_cost_per_token", "cache_write_cost_per_token"):
        current = getattr(model, name)
        update[name] = current if current is not None else getattr(info, name)
    if info.use_temperature is False:
        update["temperature"] = None
    return model.model_copy(update=update)


class ModelRegistry:
    """
    Per-provider model lists composed from discovery, catalog metadata and user overrides.

    Model lists are immutable tuples replaced wholesale on reload; readers never observe a
    half-built list. One registry is shared by every task in the process.
    """

    def __init__(
        self,
        *,
        providers: Iterable[ProviderProfile] = (),
        overrides: Iterable[ModelOverrides] = (),
        adapters: dict[ProviderKind, ProviderAdapter] | None = None,
        catalog: ModelInfoCatalog | None = None,
    ) -> None:
        self._adapters = dict(adapters) if adapters is not None else default_adapters()
        self._catalog = catalog or ModelInfoCatalog()
        self._profiles: dict[str, ProviderProfile] = {p.id: p for p in providers}
        self._overrides: tuple[ModelOverrides, ...] = tuple(overrides)
        self._models: dict[str, tuple[Model, ...]] = {}
        self._errors: dict[str, str] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    @property
    def catalog(self) -> ModelInfoCatalog:
        return self._catalog

    def profiles(self) -> list[ProviderProfile]:
        return list(self._profiles.values())

    def profile(self, provider_id: str) -> ProviderProfile:
        profile = self._profiles.get(provider_id)
        if profile is None:
            raise ConfigurationError(f"Provider '{provider_id}' not found.", provider_id=provider_id)
        return profile

    def adapter_for(self, profile: ProviderProfile) -> ProviderAdapter:
        adapter = self._adapters.get(profile.kind)
        if adapter is None:
            raise ConfigurationError(
                f"No adapter registered for provider kind '{profile.kind}'.", provider_id=profile.id
            )
        return adapter

    def models(self, provider_id: str | None = None) -> list[Model]:
        snapshot = self._models
        if provider_id is not None:
            return list(snapshot.get(provider_id, ()))
        return [m for models in snapshot.values() for m in models]

    def provider_errors(self) -> dict[str, str]:
        return dict(self._errors)

    def find(self, provider_id: str, model_id: str) -> Model | None:
        for model in self._models.get(provider_id, ()):
            if model.id == model_id:
                return model
        return None

    def resolve(self, provider_id: str, model_id: str) -> Model:
        model = self.find(provider_id, model_id)
        if model is not None:
            return model
        logger.warning("Model %s not found in provider %s; using a placeholder", model_id, provider_id)
        return Model(id=model_id, provider_id=provider_id)

    # ------------------------------------------------------------------
    # Call configuration
    # ------------------------------------------------------------------

    def compute_call_options(self, provider_id: str, model_id: str) -> CallOptions:
        profile = self.profile(provider_id)
        adapter = self.adapter_for(profile)
        model = self.find(provider_id, model_id)
        if model is None:
            logger.warning(
                "Model %s not found in provider %s, using adapter defaults without model overrides",
                model_id,
                provider_id,
            )
            model = Model(id=model_id, provider_id=provider_id)

        hook = getattr(adapter, "call_option_overrides", None)
        options = dict(hook(profile, model)) if callable(hook) else dict(profile.options)
        model_options = model.provider_overrides.get("options")
        if isinstance(model_options, dict):
            options.update(model_options)

        parameters = dict(profile.parameters)
        model_parameters = model.provider_overrides.get("parameters")
        if isinstance(model_parameters, dict):
            parameters.update(model_parameters)

        disable = model.provider_overrides.get("disableStreaming")
        streaming_disabled = disable if isinstance(disable, bool) else profile.disable_streaming
        return CallOptions(options=options, parameters=parameters, streaming_disabled=streaming_disabled)

    def create_model(self, provider_id: str, model_id: str) -> tuple[CallableModel, Model, CallOptions]:
        profile = self.profile(provider_id)
        if not profile.enabled:
            raise ConfigurationError(f"Provider '{provider_id}' is disabled.", provider_id=provider_id, model_id=model_id)
        adapter = self.adapter_for(profile)
        model = self.resolve(provider_id, model_id)
        call_options = self.compute_call_options(provider_id, model_id)
        return adapter.create_callable_model(profile, model, call_options), model, call_options

    def extra_tools(self, provider_id: str, model_id: str) -> list["ToolDefinition"]:
        profile = self.profile(provider_id)
        hook = getattr(self.adapter_for(profile), "extra_tools", None)
        if not callable(hook):
            return []
        return list(hook(profile, self.resolve(provider_id, model_id)))

    def compute_usage(
        self,
        provider_id: str,
        model: Model,
        usage: LLMUsage | None,
        *,
        task_total_cost: float,
        provider_metadata: dict[str, Any] | None = None,
    ) -> UsageReport:
        adapter = self.adapter_for(self.profile(provider_id))
        return adapter.compute_usage(
            model, usage, task_total_cost=task_total_cost, provider_metadata=provider_metadata
        )

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _load_one(self, profile: ProviderProfile, adapter: ProviderAdapter) -> None:
        result = adapter.load_models(profile)
        models = list(result.models) if result.success else []
        if not result.success:
            if result.error:
                logger.error("Failed to load models for provider %s: %s", profile.id, result.error)
            else:
                logger.warning("Models for provider %s were not loaded due to misconfiguration", profile.id)

        info_hook = getattr(adapter, "model_info", None)
        if callable(info_hook):
            models = [_enrich(m, info_hook(profile, m.id, self._catalog)) for m in models]

        by_id = {m.id: i for i, m in enumerate(models)}
        for override in self._overrides:
            if override.provider_id != profile.id:
                continue
            index = by_id.get(override.model_id)
            if index is not None:
                models[index] = merge_overrides(models[index], override)
            elif override.is_custom:
                models.append(model_from_override(override))

        with self._lock:
            # Swap, never edit in place.
            self._models = {**self._models, profile.id: tuple(models)}
            errors = {k: v for k, v in self._errors.items() if k != profile.id}
            if not result.success and result.error:
                errors[profile.id] = result.error
            self._errors = errors

    def _load_group(self, profiles: list[ProviderProfile], adapter: ProviderAdapter) -> None:
        for profile in profiles:
            if not profile.enabled:
                logger.debug("Skipping disabled provider profile %s", profile.id)
                with self._lock:
                    self._models = {k: v for k, v in self._models.items() if k != profile.id}
                continue
            self._load_one(profile, adapter)

    async def load_provider_models(self, profiles: Iterable[ProviderProfile] | None = None) -> None:
        """Discover models per provider kind concurrently; profiles of one kind load in order."""

        groups: dict[ProviderKind, list[ProviderProfile]] = {}
        for profile in self._profiles.values() if profiles is None else profiles:
            groups.setdefault(profile.kind, []).append(profile)

        jobs = []
        for kind, group in groups.items():
            adapter = self._adapters.get(kind)
            if adapter is None:
                logger.warning("No adapter for provider kind %s; skipping %d profile(s)", kind, len(group))
                continue
            jobs.append(asyncio.to_thread(self._load_group, group, adapter))
        if jobs:
            await asyncio.gather(*jobs)
        logger.info("Loaded %d model(s) across %d provider(s)", len(self.models()), len(self._models))

    async def providers_changed(self, profiles: Iterable[ProviderProfile]) -> bool:
        """Apply a new provider list. Returns True when anything was added, changed or removed."""

        new_profiles = {p.id: p for p in profiles}
        old_profiles = self._profiles
        removed = [pid for pid in old_profiles if pid not in new_profiles]
        changed = [p for pid, p in new_profiles.items() if old_profiles.get(pid) != p]

        with self._lock:
            self._profiles = new_profiles
            if removed:
                self._models = {k: v for k, v in self._models.items() if k not in removed}
                self._errors = {k: v for k, v in self._errors.items() if k not in removed}
        if changed:
            await self.load_provider_models(changed)
        return bool(changed or removed)

    async def set_overrides(self, overrides: Iterable[ModelOverrides]) -> None:
        new_overrides = tuple(overrides)
        affected = {o.provider_id for o in new_overrides} | {o.provider_id for o in self._overrides}
        self._overrides = new_overrides
        await self.load_provider_models([p for pid, p in self._profiles.items() if pid in affected])

    def overrides(self) -> list[ModelOverrides]:
        return list(self._overrides)
