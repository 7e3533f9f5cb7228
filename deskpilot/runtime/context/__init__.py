from __future__ import annotations

from .messages import (
    AssistantMessage,
    ContextFile,
    ContextMessage,
    MessageRole,
    ReasoningPart,
    TextPart,
    ToolCallPart,
    ToolMessage,
    ToolResultPart,
    UserMessage,
)
from .migrations import CURRENT_CONTEXT_VERSION
from .projection import ConnectorMessage
from .store import ContextStore, StoreState

__all__ = [
    "AssistantMessage",
    "CURRENT_CONTEXT_VERSION",
    "ConnectorMessage",
    "ContextFile",
    "ContextMessage",
    "ContextStore",
    "MessageRole",
    "ReasoningPart",
    "StoreState",
    "TextPart",
    "ToolCallPart",
    "ToolMessage",
    "ToolResultPart",
    "UserMessage",
]
