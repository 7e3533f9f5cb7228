from __future__ import annotations

from .approval import ApprovalDecision, Approver, AutoApprover, ConsoleApprover, ToolApprovalState
from .errors import CancellationToken, ConfigurationError, CredentialError
from .hooks import CallbackHooks, HookEvent, HookResult, NullHooks
from .llm.registry import ModelRegistry
from .orchestrator import Orchestrator, RunResult, RunStopReason
from .profile import AgentProfile, StaticProfileSource
from .retry import RetryPolicy
from .task import LogLevel, Task, TaskLogEntry

__all__ = [
    "AgentProfile",
    "ApprovalDecision",
    "Approver",
    "AutoApprover",
    "CallbackHooks",
    "CancellationToken",
    "ConfigurationError",
    "ConsoleApprover",
    "CredentialError",
    "HookEvent",
    "HookResult",
    "LogLevel",
    "ModelRegistry",
    "NullHooks",
    "Orchestrator",
    "RetryPolicy",
    "RunResult",
    "RunStopReason",
    "StaticProfileSource",
    "Task",
    "TaskLogEntry",
    "ToolApprovalState",
]
