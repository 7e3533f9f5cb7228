from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any

import httpx

from ..jsonio import safe_write_json
from .types import ModelInfo

logger = logging.getLogger(__name__)

MODELS_META_URL = "https://models.dev/api.json"
_PER_MILLION = 1_000_000


def _per_token(value: Any) -> float | None:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value) / _PER_MILLION
    return None


def parse_models_meta(data: Any) -> dict[str, ModelInfo]:
    """Index a models.dev payload by `vendor/model` and by bare model id (first vendor wins)."""

    out: dict[str, ModelInfo] = {}
    if not isinstance(data, dict):
        return out
    for vendor_id, vendor in data.items():
        models = vendor.get("models") if isinstance(vendor, dict) else None
        if not isinstance(models, dict):
            continue
        for model_key, raw in models.items():
            if not isinstance(raw, dict):
                continue
            limit = raw.get("limit") if isinstance(raw.get("limit"), dict) else {}
            cost = raw.get("cost") if isinstance(raw.get("cost"), dict) else {}
            use_temperature = raw.get("temperature")
            info = ModelInfo(
                max_input_tokens=limit.get("context") if isinstance(limit.get("context"), int) else None,
                max_output_tokens=limit.get("output") if isinstance(limit.get("output"), int) else None,
                input_cost_per_token=_per_token(cost.get("input")) or 0.0,
                output_cost_per_token=_per_token(cost.get("output")) or 0.0,
                cache_read_cost_per_token=_per_token(cost.get("cache_read")) or None,
                cache_write_cost_per_token=_per_token(cost.get("cache_write")) or None,
                use_temperature=use_temperature if isinstance(use_temperature, bool) else None,
            )
            out[f"{vendor_id}/{model_key}"] = info
            out.setdefault(str(model_key), info)
    return out


class ModelInfoCatalog:
    """
    Remote model metadata (limits and prices), lowest priority when composing a Model.

    A cached copy is read first; a fresh copy is then fetched and written back. Failures
    leave the catalog as it was and are only logged.
    """

    def __init__(
        self,
        *,
        url: str = MODELS_META_URL,
        cache_path: Path | None = None,
        timeout_s: float = 15.0,
        entries: dict[str, ModelInfo] | None = None,
    ) -> None:
        self._url = url
        self._cache_path = cache_path
        self._timeout_s = timeout_s
        self._entries: dict[str, ModelInfo] = dict(entries or {})
        self._lock = threading.Lock()

    @classmethod
    def from_data(cls, data: Any) -> "ModelInfoCatalog":
        return cls(entries=parse_models_meta(data))

    def __len__(self) -> int:
        return len(self._entries)

    def lookup(self, model_id: str, *, vendor: str | None = None) -> ModelInfo | None:
        entries = self._entries
        if vendor:
            hit = entries.get(f"{vendor}/{model_id}")
            if hit is not None:
                return hit
        hit = entries.get(model_id)
        if hit is not None:
            return hit
        # Provider-prefixed ids such as "openrouter/anthropic/claude-x" fall back to the last segment.
        return entries.get(model_id.rsplit("/", 1)[-1])

    def load(self, *, fetch: bool = True) -> None:
        if self._cache_path is not None and self._cache_path.exists():
            try:
                self._swap(parse_models_meta(json.loads(self._cache_path.read_text(encoding="utf-8"))))
                logger.info("Loaded model info from cache %s", self._cache_path)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("Ignoring unreadable model info cache %s: %s", self._cache_path, e)
        if fetch:
            self.refresh()

    def refresh(self) -> bool:
        try:
            with httpx.Client(timeout=self._timeout_s) as client:
                r = client.get(self._url)
                r.raise_for_status()
                data = r.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Failed to fetch model info from %s: %s", self._url, e)
            return False

        self._swap(parse_models_meta(data))
        if self._cache_path is not None:
            try:
                safe_write_json(self._cache_path, data)
            except OSError as e:
                logger.warning("Failed to write model info cache %s: %s", self._cache_path, e)
        return True

    def _swap(self, entries: dict[str, ModelInfo]) -> None:
        with self._lock:
            self._entries = entries
