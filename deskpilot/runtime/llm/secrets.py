from __future__ import annotations

import os

from ..errors import CredentialError
from .types import ProviderKind, ProviderProfile

DEFAULT_KEY_ENV: dict[ProviderKind, str] = {
    ProviderKind.OPENAI_COMPATIBLE: "OPENAI_API_KEY",
    ProviderKind.ANTHROPIC: "ANTHROPIC_API_KEY",
    ProviderKind.GEMINI: "GEMINI_API_KEY",
}


def resolve_api_key(profile: ProviderProfile, *, required: bool = True) -> str | None:
    if profile.api_key:
        return profile.api_key

    env_name = profile.api_key_env or DEFAULT_KEY_ENV.get(profile.kind)
    value = os.environ.get(env_name) if env_name else None
    if value:
        return value
    if not required:
        return None
    raise CredentialError(
        f"Missing API key for provider '{profile.id}' (set '{env_name}' or api_key).",
        provider_id=profile.id,
        credential_ref=f"env:{env_name}" if env_name else None,
    )
