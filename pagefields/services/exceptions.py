from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Closed set of failure categories shared by every pipeline stage."""

    VALIDATION = "validation"
    SECURITY = "security"
    NETWORK = "network"
    TIMEOUT = "timeout"
    PARSING = "parsing"
    RATE_LIMIT = "rate_limit"
    EXTRACTION = "extraction"
    INTERNAL = "internal"


class ScraperError(Exception):
    """Base class for extraction pipeline errors.

    Errors are value objects: created where the failure happens, carried up to
    the boundary layer, and discarded with the response they describe.
    """

    kind: ErrorKind = ErrorKind.INTERNAL
    error_code = "SCRAPER_ERROR"
    default_suggested_action = "Retry the request later or contact support."

    def __init__(
        self,
        message: str,
        *,
        context: Optional[dict[str, Any]] = None,
        suggested_action: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context = dict(context or {})
        self.suggested_action = suggested_action or self.default_suggested_action

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "suggested_action": self.suggested_action,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class ValidationError(ScraperError):
    """Input had the wrong shape (blank URL, malformed fields, bad JSON)."""

    kind = ErrorKind.VALIDATION
    error_code = "VALIDATION_ERROR"
    default_suggested_action = "Check the request parameters and try again."


class SecurityError(ScraperError):
    """Target URL points at a forbidden scheme, host or address range."""

    kind = ErrorKind.SECURITY
    error_code = "SECURITY_ERROR"
    default_suggested_action = "Use a public http(s) URL."


class NetworkError(ScraperError):
    """Network instability or an HTTP error status while fetching a page."""

    kind = ErrorKind.NETWORK
    error_code = "NETWORK_ERROR"
    default_suggested_action = (
        "Verify the URL is reachable and retry after a short delay."
    )

    def __init__(
        self,
        message: str,
        *,
        retry_after: Optional[float] = None,
        status_code: Optional[int] = None,
        context: Optional[dict[str, Any]] = None,
        suggested_action: Optional[str] = None,
    ) -> None:
        super().__init__(message, context=context, suggested_action=suggested_action)
        self.retry_after = retry_after
        self.status_code = status_code
        if status_code is not None:
            self.context.setdefault("status_code", status_code)

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["retry_after"] = self.retry_after
        payload["status_code"] = self.status_code
        return payload


class TimeoutError(NetworkError):  # noqa: A001 - part of the public taxonomy
    """The remote host did not answer within the configured timeout."""

    kind = ErrorKind.TIMEOUT
    error_code = "TIMEOUT_ERROR"
    default_suggested_action = "The site is slow to respond; retry later."

    def __init__(
        self,
        message: str,
        *,
        timeout: Optional[float] = None,
        retry_after: Optional[float] = None,
        status_code: Optional[int] = None,
        context: Optional[dict[str, Any]] = None,
        suggested_action: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            retry_after=retry_after,
            status_code=status_code,
            context=context,
            suggested_action=suggested_action,
        )
        self.timeout = timeout
        if timeout is not None:
            self.context.setdefault("timeout", timeout)


class ParsingError(ScraperError):
    """The fetched body could not be parsed as an HTML document."""

    kind = ErrorKind.PARSING
    error_code = "PARSING_ERROR"
    default_suggested_action = "Make sure the URL serves an HTML page."


class RateLimitError(ScraperError):
    """A throttle rule rejected the request."""

    kind = ErrorKind.RATE_LIMIT
    error_code = "RATE_LIMIT_ERROR"
    default_suggested_action = "Wait for the rate limit window to reset."
    DEFAULT_RETRY_AFTER = 60

    def __init__(
        self,
        message: str = "Rate limit exceeded. Please try again later.",
        *,
        retry_after: Optional[float] = None,
        context: Optional[dict[str, Any]] = None,
        suggested_action: Optional[str] = None,
    ) -> None:
        super().__init__(message, context=context, suggested_action=suggested_action)
        self.retry_after = (
            retry_after if retry_after is not None else self.DEFAULT_RETRY_AFTER
        )

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["retry_after"] = self.retry_after
        return payload


class ExtractionError(ScraperError):
    """Field extraction failed as a whole (not a single-field failure)."""

    kind = ErrorKind.EXTRACTION
    error_code = "EXTRACTION_ERROR"
    default_suggested_action = "Check the selectors and field definitions."


def wrap_unexpected(exc: BaseException) -> ScraperError:
    """Convert a foreign exception into an INTERNAL taxonomy member."""
    if isinstance(exc, ScraperError):
        return exc
    return ScraperError(
        f"Unexpected error: {exc}",
        context={"error_class": type(exc).__name__},
    )


__all__ = [
    "ErrorKind",
    "ScraperError",
    "ValidationError",
    "SecurityError",
    "NetworkError",
    "TimeoutError",
    "ParsingError",
    "RateLimitError",
    "ExtractionError",
    "wrap_unexpected",
]
