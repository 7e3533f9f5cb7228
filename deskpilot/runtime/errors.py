from __future__ import annotations

import threading
from typing import Any

from .error_codes import ErrorCode

CREDENTIALS_HINT = ". Configure credentials in the Model Library."


class ConfigurationError(ValueError):
    """Provider or model is not configured; the run is aborted before any model call."""

    def __init__(
        self,
        message: str,
        *,
        provider_id: str | None = None,
        model_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.provider_id = provider_id
        self.model_id = model_id


class CredentialError(ConfigurationError):
    def __init__(self, message: str, *, provider_id: str | None = None, credential_ref: str | None = None) -> None:
        super().__init__(message, provider_id=provider_id)
        self.credential_ref = credential_ref


class ToolError(RuntimeError):
    code: ErrorCode = ErrorCode.TOOL_FAILED

    def __init__(self, message: str, *, tool_name: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.tool_name = tool_name
        self.details = details


class ToolNameError(ToolError, KeyError):
    code = ErrorCode.TOOL_UNKNOWN


class ToolInputError(ToolError):
    code = ErrorCode.TOOL_INVALID_ARGS


class ToolExecutionError(ToolError):
    code = ErrorCode.TOOL_FAILED


class ContextStoreError(RuntimeError):
    pass


class MessageNotFoundError(ContextStoreError, KeyError):
    code = ErrorCode.CONTEXT_NOT_FOUND

    def __init__(self, message: str, *, target_id: str) -> None:
        super().__init__(message)
        self.target_id = target_id

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def with_credentials_hint(message: str) -> str:
    """Append actionable guidance to errors that mention missing keys or credentials."""

    if "API key" in message or "credentials" in message:
        if message.endswith(CREDENTIALS_HINT):
            return message
        return message.rstrip(".") + CREDENTIALS_HINT
    return message
