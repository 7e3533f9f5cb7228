from __future__ import annotations

import logging
import os
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigurationError
from .jsonio import read_json_dict, safe_write_json
from .llm.model_info import MODELS_META_URL
from .llm.types import ModelOverrides, ProviderProfile
from .profile import AgentProfile

logger = logging.getLogger(__name__)

CONFIG_DIR = Path(".deskpilot") / "config"
CONFIG_FILE = "runtime.json"
MODEL_CATALOG_CACHE = "models-meta.json"

ENV_LOG_LEVEL = "DESKPILOT_LOG_LEVEL"
ENV_MODEL_CATALOG = "DESKPILOT_MODEL_CATALOG"

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_FALSEY = {"0", "false", "no", "off"}


class RuntimeSettings(BaseModel):
    providers: list[ProviderProfile] = Field(default_factory=list)
    model_overrides: list[ModelOverrides] = Field(default_factory=list)
    profiles: list[AgentProfile] = Field(default_factory=list)
    default_profile: AgentProfile = Field(default_factory=AgentProfile)
    model_catalog_url: str = MODELS_META_URL
    model_catalog_enabled: bool = True
    log_level: str = "WARNING"

    def profile(self, profile_id: str | None = None) -> AgentProfile:
        if profile_id is None or profile_id == self.default_profile.id:
            return self.default_profile
        for profile in self.profiles:
            if profile.id == profile_id:
                return profile
        raise ConfigurationError(f"Agent profile '{profile_id}' not found.")


def config_path(project_dir: Path) -> Path:
    return project_dir / CONFIG_DIR / CONFIG_FILE


def catalog_cache_path(project_dir: Path) -> Path:
    return project_dir / CONFIG_DIR / MODEL_CATALOG_CACHE


def _apply_env(settings: RuntimeSettings) -> RuntimeSettings:
    update: dict[str, object] = {}
    level = os.environ.get(ENV_LOG_LEVEL, "").strip()
    if level:
        update["log_level"] = level.upper()
    catalog = os.environ.get(ENV_MODEL_CATALOG, "").strip().lower()
    if catalog in _FALSEY:
        update["model_catalog_enabled"] = False
    return settings.model_copy(update=update) if update else settings


def load_settings(project_dir: Path) -> RuntimeSettings:
    """Read `<project>/.deskpilot/config/runtime.json`; a missing or empty file yields defaults."""

    path = config_path(project_dir)
    try:
        raw = read_json_dict(path, error_cls=ConfigurationError)
    except FileNotFoundError:
        raw = None
    if raw is None:
        logger.debug("No runtime config at %s; using defaults", path)
        return _apply_env(RuntimeSettings())
    try:
        settings = RuntimeSettings.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid runtime config {path}: {e}") from e
    return _apply_env(settings)


def save_settings(project_dir: Path, settings: RuntimeSettings) -> Path:
    path = config_path(project_dir)
    safe_write_json(path, settings.model_dump(mode="json", exclude_defaults=True))
    logger.info("Saved runtime config to %s", path)
    return path


def configure_logging(level: str | int = "WARNING") -> None:
    """Install one stream handler on the package logger. Calling again only changes the level."""

    root = logging.getLogger("deskpilot")
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        level = resolved if isinstance(resolved, int) else logging.WARNING
    root.setLevel(level)
    if not any(getattr(h, "_deskpilot", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._deskpilot = True  # type: ignore[attr-defined]
        root.addHandler(handler)
