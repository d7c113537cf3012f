from enum import Enum
from typing import Optional


class GeminiErrorCode(str, Enum):
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    RATE_LIMIT_ERROR = "RATE_LIMIT_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    INVALID_INPUT = "INVALID_INPUT"
    PARSING_ERROR = "PARSING_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


RETRYABLE_CODES = frozenset(
    {
        GeminiErrorCode.TIMEOUT_ERROR,
        GeminiErrorCode.RATE_LIMIT_ERROR,
        GeminiErrorCode.SERVICE_UNAVAILABLE,
    }
)

# Route-boundary mapping. A bad API key is a server misconfiguration,
# never the caller's fault, so it surfaces as 500.
_HTTP_STATUS = {
    GeminiErrorCode.INVALID_INPUT: 400,
    GeminiErrorCode.AUTHENTICATION_ERROR: 500,
    GeminiErrorCode.RATE_LIMIT_ERROR: 429,
    GeminiErrorCode.TIMEOUT_ERROR: 503,
    GeminiErrorCode.SERVICE_UNAVAILABLE: 503,
    GeminiErrorCode.PARSING_ERROR: 502,
    GeminiErrorCode.UNKNOWN_ERROR: 500,
}


class GeminiError(Exception):
    """The single failure type raised by the analysis service."""

    def __init__(
        self,
        message: str,
        code: GeminiErrorCode,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.code in RETRYABLE_CODES

    def __repr__(self) -> str:
        return f"GeminiError({self.message!r}, {self.code.value})"


def http_status_for(code: GeminiErrorCode) -> int:
    return _HTTP_STATUS[code]
