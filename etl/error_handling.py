"""
Portal build error handling: turns builder failures into stored error records
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from chat.errors import InvalidInputError, NotFoundError, PortalServiceError


class ErrorType(str, Enum):
    VALIDATION = "VALIDATION_ERROR"
    NETWORK = "NETWORK_ERROR"
    DATABASE = "DATABASE_ERROR"
    EXTERNAL_API = "EXTERNAL_API_ERROR"
    TIMEOUT = "TIMEOUT"
    INTERNAL = "INTERNAL_ERROR"


class Severity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


# Checked in order; the first matching keyword group wins
MESSAGE_RULES = (
    (("timeout", "timed out", "deadline"), ErrorType.TIMEOUT, Severity.WARNING, True),
    (("connection", "network", "dns", "socket"), ErrorType.NETWORK, Severity.WARNING, True),
    (("database", "sqlalchemy", "deadlock", "version conflict"), ErrorType.DATABASE, Severity.CRITICAL, True),
    (("api", "rate limit", "quota", "service unavailable", "429", "503", "embedding"),
     ErrorType.EXTERNAL_API, Severity.WARNING, True),
    (("validation", "invalid", "missing required", "schema"), ErrorType.VALIDATION, Severity.INFO, False),
)


@dataclass
class BuildFailure:
    code: str
    message: str
    severity: Severity
    retryable: bool


def classify_error(error: BaseException) -> Tuple[ErrorType, Severity, bool]:
    """Classify a build failure and report whether a caller-side retry could help.

    Returns: (error_type, severity, is_retryable)
    """
    if isinstance(error, asyncio.TimeoutError):
        return (ErrorType.TIMEOUT, Severity.WARNING, True)
    if isinstance(error, (NotFoundError, InvalidInputError)):
        return (ErrorType.VALIDATION, Severity.INFO, False)

    message = str(error).lower()
    for keywords, error_type, severity, retryable in MESSAGE_RULES:
        if any(k in message for k in keywords):
            return (error_type, severity, retryable)

    return (ErrorType.INTERNAL, Severity.CRITICAL, False)


def describe_failure(error: BaseException, timeout_seconds: Optional[float] = None) -> BuildFailure:
    """Error code and public message for a failed portal build"""
    error_type, severity, retryable = classify_error(error)

    if isinstance(error, PortalServiceError):
        message = error.message
    elif isinstance(error, asyncio.TimeoutError) and not str(error):
        message = (
            f"Portal build timed out after {timeout_seconds}s" if timeout_seconds is not None
            else "Portal build timed out"
        )
    else:
        message = str(error) or type(error).__name__

    return BuildFailure(code=error_type.value, message=message, severity=severity, retryable=retryable)
