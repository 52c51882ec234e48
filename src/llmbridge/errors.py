from __future__ import annotations

from enum import Enum

import httpx


class ErrorKind(str, Enum):
    CONNECTION_FAILED = "CONNECTION_FAILED"
    AUTH_FAILED = "AUTH_FAILED"
    RATE_LIMITED = "RATE_LIMITED"
    MODEL_NOT_FOUND = "MODEL_NOT_FOUND"
    INVALID_REQUEST = "INVALID_REQUEST"
    TIMEOUT = "TIMEOUT"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    CONTENT_FILTERED = "CONTENT_FILTERED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_value(cls, value: str) -> "ErrorKind | None":
        try:
            return cls(value)
        except ValueError:
            return None


class LLMError(Exception):
    """Failure raised by every layer of the pipeline.

    ``retryable`` tells the retry policy whether the operation may be attempted
    again; ``provider`` is the id of the backend (or service) that failed.
    """

    def __init__(
        self,
        message: str,
        code: ErrorKind = ErrorKind.UNKNOWN,
        provider: str = "unknown",
        retryable: bool = False,
        original_error: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.provider = provider
        self.retryable = retryable
        self.original_error = original_error

    def __repr__(self) -> str:
        return (
            f"LLMError(code={self.code.value}, provider={self.provider!r}, "
            f"retryable={self.retryable}, message={self.message!r})"
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "error": self.message,
            "code": self.code.value,
            "provider": self.provider,
            "retryable": self.retryable,
        }


def error_kind_from_status(status: int) -> ErrorKind:
    if status == 401:
        return ErrorKind.AUTH_FAILED
    if status == 404:
        return ErrorKind.MODEL_NOT_FOUND
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status >= 500:
        return ErrorKind.CONNECTION_FAILED
    return ErrorKind.UNKNOWN


def is_retryable_status(status: int) -> bool:
    return status == 429 or status >= 500


def error_from_status(status: int, message: str, provider: str) -> LLMError:
    return LLMError(
        message,
        error_kind_from_status(status),
        provider,
        retryable=is_retryable_status(status),
    )


def error_from_httpx(exc: httpx.HTTPError, provider: str, *, action: str = "Request") -> LLMError:
    if isinstance(exc, httpx.TimeoutException):
        return LLMError(
            f"{action} timed out: {exc}",
            ErrorKind.TIMEOUT,
            provider,
            retryable=True,
            original_error=exc,
        )
    return LLMError(
        f"{action} failed: {exc}",
        ErrorKind.CONNECTION_FAILED,
        provider,
        retryable=True,
        original_error=exc,
    )


def as_llm_error(
    exc: BaseException,
    provider: str,
    *,
    prefix: str = "Operation failed",
) -> LLMError:
    if isinstance(exc, LLMError):
        return exc
    detail = str(exc) or type(exc).__name__
    return LLMError(
        f"{prefix}: {detail}",
        ErrorKind.UNKNOWN,
        provider,
        retryable=False,
        original_error=exc,
    )


__all__ = [
    "ErrorKind",
    "LLMError",
    "as_llm_error",
    "error_from_httpx",
    "error_from_status",
    "error_kind_from_status",
    "is_retryable_status",
]
