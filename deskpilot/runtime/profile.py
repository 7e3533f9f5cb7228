from __future__ import annotations

import threading
from typing import Iterable, Protocol

from pydantic import BaseModel, Field, field_validator

from .approval import ToolApprovalState, approval_state

DEFAULT_PROFILE_ID = "default"
DEFAULT_MAX_ITERATIONS = 250


def _dedupe_str_list(values: list[str]) -> list[str]:
    out: list[str] = []
    for value in values:
        cleaned = value.strip()
        if cleaned and cleaned not in out:
            out.append(cleaned)
    return out


class AgentProfile(BaseModel):
    """
    Read-only run configuration: which model, which tools, and the loop limits.

    `enabled_tool_groups` empty means every supplied group is enabled. Approval entries are
    keyed by full tool id (`group---tool`); a missing entry means ASK.
    """

    id: str = DEFAULT_PROFILE_ID
    name: str = "Default Agent"
    provider_id: str = ""
    model_id: str = ""
    system_prompt: str = ""
    custom_instructions: str = ""
    enabled_tool_groups: list[str] = Field(default_factory=list)
    tool_approvals: dict[str, ToolApprovalState] = Field(default_factory=dict)
    max_iterations: int = Field(default=DEFAULT_MAX_ITERATIONS, ge=1)
    min_time_between_tool_calls_ms: int = Field(default=0, ge=0)
    context_compacting_threshold: int = Field(default=0, ge=0, le=100)
    max_output_tokens: int | None = Field(default=None, ge=1)
    temperature: float | None = None
    # One corrective model call per failed tool execution; off keeps the error text as the result.
    repair_tool_errors: bool = True

    @field_validator("enabled_tool_groups")
    @classmethod
    def _validate_groups(cls, v: list[str]) -> list[str]:
        return _dedupe_str_list(v)

    def approval_for(self, tool_key: str) -> ToolApprovalState:
        return approval_state(self.tool_approvals, tool_key)

    def group_enabled(self, group: str) -> bool:
        return not self.enabled_tool_groups or group in self.enabled_tool_groups


class ProfileSource(Protocol):
    def current_profile(self, profile_id: str) -> AgentProfile | None: ...


class StaticProfileSource:
    """Pull-based profile accessor; `profiles_changed` is the push side (file watchers, settings UIs)."""

    def __init__(self, profiles: Iterable[AgentProfile] = ()) -> None:
        self._profiles: dict[str, AgentProfile] = {p.id: p for p in profiles}
        self._lock = threading.Lock()

    def current_profile(self, profile_id: str) -> AgentProfile | None:
        return self._profiles.get(profile_id)

    def profiles_changed(self, profiles: Iterable[AgentProfile]) -> None:
        new_profiles = {p.id: p for p in profiles}
        with self._lock:
            self._profiles = new_profiles
