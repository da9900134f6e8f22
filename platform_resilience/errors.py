"""
Errors and error classification for Platform Resilience.

Endpoint failures are normally *data* (recorded into endpoint health, never
raised).  The exceptions here are for the few places where a caller must be
told something went wrong:

    ConfigurationError         malformed platform configuration file
    NoEndpointAvailableError   every endpoint is unhealthy and the recovery
                               probe failed (raised by the execute helper)
    AuthenticationFailedError  credentials rejected and no alternative
                               authentication succeeded

``classify_error`` maps raw exceptions and messages to an ErrorCode so that
the request loop can tell an auth rejection from a transient outage.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional, Set

if TYPE_CHECKING:
    from platform_resilience.auth_fallback import AuthFallbackResult


# ===================================================================
# EXCEPTIONS
# ===================================================================

class ResilienceError(Exception):
    """Base exception for the request layer."""


class ConfigurationError(ResilienceError):
    """Raised when the platform configuration cannot be parsed."""


class NoEndpointAvailableError(ResilienceError):
    """Raised when no endpoint of a platform can currently serve a request."""

    def __init__(self, platform: str, operation_type: str = "default",
                 last_error: Optional[BaseException] = None) -> None:
        self.platform = platform
        self.operation_type = operation_type
        self.last_error = last_error
        message = f"No endpoint available for {platform} ({operation_type})"
        if last_error is not None:
            message += f": {last_error}"
        super().__init__(message)


class AuthenticationFailedError(ResilienceError):
    """Raised when authentication could not be restored automatically.

    ``result`` carries the fallback outcome, including the ``retry_url`` the
    user must visit to re-authenticate.
    """

    def __init__(self, platform: str, result: AuthFallbackResult) -> None:
        self.platform = platform
        self.result = result
        super().__init__(f"Authentication failed for {platform}: {result.message}")


class PlatformHTTPError(ResilienceError):
    """Optional error type for callers wrapping HTTP responses."""

    def __init__(self, message: str, status_code: int = 0, response_body: str = "") -> None:
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(message)


# ===================================================================
# ERROR CODES
# ===================================================================

class ErrorCode(str, Enum):
    """Structured error codes.

    Ranges:
        E1xxx — Network errors
        E2xxx — Authentication errors
        E6xxx — Platform errors
        E9xxx — Internal errors
    """

    E1001 = "NETWORK_TIMEOUT"
    E1002 = "NETWORK_UNREACHABLE"
    E1003 = "DNS_RESOLUTION_FAILED"
    E1004 = "CONNECTION_REFUSED"
    E1005 = "SSL_ERROR"

    E2001 = "AUTH_EXPIRED"
    E2002 = "AUTH_INVALID"
    E2003 = "AUTH_INSUFFICIENT_SCOPE"

    E6001 = "PLATFORM_BANNED"
    E6003 = "PLATFORM_RATE_LIMITED"
    E6004 = "PLATFORM_MAINTENANCE"
    E6005 = "PLATFORM_SERVER_ERROR"

    E9001 = "INTERNAL_ERROR"


AUTH_CODES: Set[ErrorCode] = {ErrorCode.E2001, ErrorCode.E2002, ErrorCode.E2003}

# "HTTP 401: ...", "status=503", "status code 429"
_STATUS_RE = re.compile(r"\b(?:http|status(?:\s*code)?)[\s:=]*([1-5]\d\d)\b")


@dataclass
class ErrorContext:
    """Classified failure, stored as the endpoint's ``last_error`` text."""

    code: ErrorCode
    message: str
    status_code: Optional[int] = None
    timestamp: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = datetime.now(timezone.utc).isoformat()

    @property
    def is_auth(self) -> bool:
        return self.code in AUTH_CODES

    def __str__(self) -> str:
        return f"[{self.code.name}] {self.code.value}: {self.message}"


def _status_from(exception: BaseException) -> Optional[int]:
    for attr in ("status_code", "status"):
        value = getattr(exception, attr, None)
        if isinstance(value, int):
            return value
    match = _STATUS_RE.search(str(exception).lower())
    if match:
        return int(match.group(1))
    return None


def classify_error(exception: BaseException) -> ErrorContext:
    """Map a raw exception to a structured ErrorContext.

    Inspects a ``status_code``/``status`` attribute first, then the exception
    type and message.  Falls back to E9001 (INTERNAL_ERROR).
    """
    exc_type = type(exception).__name__
    exc_msg = str(exception).lower()
    status = _status_from(exception)

    if status == 401 or "unauthorized" in exc_msg or "token expired" in exc_msg:
        code = ErrorCode.E2001
    elif "invalid api key" in exc_msg or "invalid_token" in exc_msg or "invalid token" in exc_msg:
        code = ErrorCode.E2002
    elif status == 403 or "forbidden" in exc_msg or "insufficient scope" in exc_msg:
        code = ErrorCode.E2003
    elif exc_type in ("TimeoutError", "ServerTimeoutError", "ConnectionTimeoutError") or "timeout" in exc_msg:
        code = ErrorCode.E1001
    elif exc_type == "ConnectionRefusedError" or "connection refused" in exc_msg:
        code = ErrorCode.E1004
    elif "name or service not known" in exc_msg or "getaddrinfo" in exc_msg or "dns" in exc_msg:
        code = ErrorCode.E1003
    elif "ssl" in exc_msg or "certificate" in exc_msg:
        code = ErrorCode.E1005
    elif exc_type in ("ConnectionError", "ConnectionResetError", "ClientConnectorError") \
            or "unreachable" in exc_msg:
        code = ErrorCode.E1002
    elif status == 429 or "rate limit" in exc_msg:
        code = ErrorCode.E6003
    elif status == 503 or "maintenance" in exc_msg:
        code = ErrorCode.E6004
    elif status is not None and status >= 500:
        code = ErrorCode.E6005
    elif "banned" in exc_msg or "suspended" in exc_msg:
        code = ErrorCode.E6001
    else:
        code = ErrorCode.E9001

    return ErrorContext(
        code=code,
        message=str(exception) or exc_type,
        status_code=status,
        metadata={"exception_type": exc_type},
    )


def is_auth_error(exception: BaseException) -> bool:
    """True when *exception* means the platform rejected our credentials."""
    return classify_error(exception).is_auth
