from __future__ import annotations

import json
from typing import Any

import anthropic
import httpx
import openai

from ..error_codes import ErrorCode
from .types import ProviderKind

LLMErrorCode = ErrorCode

_RETRYABLE_CODES = frozenset(
    {
        LLMErrorCode.TIMEOUT,
        LLMErrorCode.RATE_LIMIT,
        LLMErrorCode.SERVER_ERROR,
        LLMErrorCode.NETWORK_ERROR,
    }
)


class ProviderAdapterError(RuntimeError):
    pass


class LLMRequestError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        code: LLMErrorCode,
        provider_kind: ProviderKind | None = None,
        provider_id: str | None = None,
        model: str | None = None,
        status_code: int | None = None,
        request_id: str | None = None,
        retryable: bool | None = None,
        details: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.provider_kind = provider_kind
        self.provider_id = provider_id
        self.model = model
        self.status_code = status_code
        self.request_id = request_id
        self.retryable = is_retryable_error_code(code) if retryable is None else retryable
        self.details = details
        self.__cause__ = cause


def is_retryable_error_code(code: LLMErrorCode) -> bool:
    return code in _RETRYABLE_CODES


def _code_from_status(status_code: int) -> LLMErrorCode:
    if status_code == 400:
        return LLMErrorCode.BAD_REQUEST
    if status_code == 401:
        return LLMErrorCode.AUTH
    if status_code == 403:
        return LLMErrorCode.PERMISSION
    if status_code == 404:
        return LLMErrorCode.NOT_FOUND
    if status_code in (408, 504):
        return LLMErrorCode.TIMEOUT
    if status_code == 409:
        return LLMErrorCode.CONFLICT
    if status_code == 422:
        return LLMErrorCode.UNPROCESSABLE
    if status_code == 429:
        return LLMErrorCode.RATE_LIMIT
    if 500 <= status_code <= 599:
        return LLMErrorCode.SERVER_ERROR
    return LLMErrorCode.UNKNOWN


def classify_provider_exception(exc: BaseException) -> LLMErrorCode:
    if isinstance(exc, LLMRequestError):
        return exc.code


    for sdk in (openai, anthropic):
        if isinstance(exc, sdk.APITimeoutError):
            return LLMErrorCode.TIMEOUT
        if isinstance(exc, sdk.APIConnectionError):
            return LLMErrorCode.NETWORK_ERROR
        if isinstance(exc, sdk.RateLimitError):
            return LLMErrorCode.RATE_LIMIT
        if isinstance(exc, sdk.AuthenticationError):
            return LLMErrorCode.AUTH
        if isinstance(exc, sdk.PermissionDeniedError):
            return LLMErrorCode.PERMISSION
        if isinstance(exc, sdk.NotFoundError):
            return LLMErrorCode.NOT_FOUND
        if isinstance(exc, sdk.ConflictError):
            return LLMErrorCode.CONFLICT
        if isinstance(exc, sdk.UnprocessableEntityError):
            return LLMErrorCode.UNPROCESSABLE
        if isinstance(exc, sdk.BadRequestError):
            return LLMErrorCode.BAD_REQUEST
        if isinstance(exc, sdk.InternalServerError):
            return LLMErrorCode.SERVER_ERROR
        if isinstance(exc, sdk.APIResponseValidationError):
            return LLMErrorCode.RESPONSE_VALIDATION

    if isinstance(exc, httpx.TimeoutException):
        return LLMErrorCode.TIMEOUT
    if isinstance(exc, httpx.NetworkError):
        return LLMErrorCode.NETWORK_ERROR
    if isinstance(exc, httpx.HTTPStatusError):
        return _code_from_status(int(exc.response.status_code))

    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int):
        return _code_from_status(status_code)

    if isinstance(exc, TimeoutError):
        return LLMErrorCode.TIMEOUT
    if isinstance(exc, ConnectionError):
        return LLMErrorCode.NETWORK_ERROR
    return LLMErrorCode.UNKNOWN


def wrap_provider_exception(
    exc: BaseException,
    *,
    provider_kind: ProviderKind,
    provider_id: str,
    model: str | None,
    operation: str,
) -> LLMRequestError:
    if isinstance(exc, LLMRequestError):
        return exc
    code = classify_provider_exception(exc)
    status_code = getattr(exc, "status_code", None)
    if isinstance(exc, httpx.HTTPStatusError):
        status_code = int(exc.response.status_code)
    request_id = getattr(exc, "request_id", None)
    message = str(exc) or exc.__class__.__name__
    extra = _provider_error_detail(exc)
    if extra:
        # Avoid repeating identical strings.
        if extra not in message:
            message = f"{message}: {extra}"
    return LLMRequestError(
        message,
        code=code,
        provider_kind=provider_kind,
        provider_id=provider_id,
        model=model,
        status_code=status_code if isinstance(status_code, int) else None,
        request_id=request_id if isinstance(request_id, str) else None,
        retryable=is_retryable_error_code(code),
        details={"operation": operation},
        cause=exc,
    )


def _provider_error_detail(exc: BaseException) -> str | None:
    # OpenAI SDK HTTP errors often include a structured body with the real error message.
    if isinstance(exc, openai.OpenAIError):
        body = getattr(exc, "body", None)
        if isinstance(body, dict):
            err = body.get("error") if isinstance(body.get("error"), dict) else body
            msg = err.get("message")
            if isinstance(msg, str) and msg.strip():
                typ = err.get("type")
                if isinstance(typ, str) and typ.strip():
                    return f"{msg.strip()} (type={typ.strip()})"
                return msg.strip()
            return _truncate(_safe_json_dumps(body), 2000)
        if isinstance(body, str) and body.strip():
            return _truncate(body.strip(), 2000)
        return None

    if isinstance(exc, anthropic.AnthropicError):
        body = getattr(exc, "body", None)
        if isinstance(body, dict):
            err = body.get("error") if isinstance(body.get("error"), dict) else body
            msg = err.get("message")
            if isinstance(msg, str) and msg.strip():
                return msg.strip()
            return _truncate(_safe_json_dumps(body), 2000)
        if isinstance(body, str) and body.strip():
            return _truncate(body.strip(), 2000)
        return None

    if isinstance(exc, httpx.HTTPStatusError):
        try:
            text = exc.response.text
        except httpx.ResponseNotRead:
            return None
        if isinstance(text, str) and text.strip():
            return _truncate(text.strip(), 2000)
    return None


def _safe_json_dumps(obj: Any) -> str:
    try:
        return json.dumps(obj, ensure_ascii=False, sort_keys=True)
    except (TypeError, ValueError):
        return repr(obj)


def _truncate(text: str, max_chars: int) -> str:
    if max_chars <= 0 or not text:
        return ""
    if len(text) <= max_chars:
        return text
    return text[: max(0, max_chars - 1)] + "…"

