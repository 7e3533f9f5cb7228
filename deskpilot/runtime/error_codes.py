from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    NETWORK_ERROR = "network_error"
    AUTH = "auth"
    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    BAD_REQUEST = "bad_request"
    CONFLICT = "conflict"
    UNPROCESSABLE = "unprocessable"
    RESPONSE_VALIDATION = "response_validation"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"

    MODEL_RESOLUTION = "model_resolution"
    TOOL_UNKNOWN = "tool_unknown"
    TOOL_INVALID_ARGS = "tool_invalid_args"
    TOOL_FAILED = "tool_failed"
    TOOL_DENIED = "tool_denied"
    CONTEXT_NOT_FOUND = "context_not_found"
