"""
Error taxonomy for the craftchat conversation package.

Failures reach callers as values, not exceptions: a provider call that gives up
returns an ``AIResponse`` whose ``error_kind`` is one of the ``ErrorKind``
members below.  The exception hierarchy is still used *inside* a single
provider attempt (HTTP layer → retry policy) and is translated by
``classify_error`` before anything leaves the provider.
"""

from __future__ import annotations

import asyncio
import enum

import httpx

# Statuses that will not succeed on a retry.  400 is included because a
# malformed request is deterministic; the Ollama tool-rejection 400 is handled
# by the provider before classification.
NON_RECOVERABLE_STATUS_CODES = frozenset({400, 401, 403, 404})


class ErrorKind(str, enum.Enum):
    """Classes of failure the conversation core distinguishes."""

    CONFIGURATION = "configuration"
    TRANSPORT = "transport"
    RATE_LIMIT = "rate_limit"
    NON_RECOVERABLE = "non_recoverable"
    PROTOCOL = "protocol"
    TOOL_EXECUTION = "tool_execution"
    DETECTION = "detection"

    @property
    def recoverable(self) -> bool:
        """True when a retry may succeed."""
        return self in (ErrorKind.TRANSPORT, ErrorKind.RATE_LIMIT)


# ---------------------------------------------------------------------------
# Custom exception hierarchy
# ---------------------------------------------------------------------------


class LLMError(Exception):
    """Base exception for all conversation-core errors."""

    kind: ErrorKind = ErrorKind.PROTOCOL


class ConfigurationError(LLMError):
    """Raised when provider or detection settings are missing or invalid."""

    kind = ErrorKind.CONFIGURATION


class LLMConnectionError(LLMError):
    """Raised when the LLM API endpoint cannot be reached or times out."""

    kind = ErrorKind.TRANSPORT


class LLMRateLimitError(LLMError):
    """Raised when the LLM API returns a rate-limit (429) response."""

    kind = ErrorKind.RATE_LIMIT


class LLMAPIError(LLMError):
    """Raised for non-2xx LLM API responses other than 429.

    Attributes:
        status_code: HTTP status code from the API, or ``None`` if unavailable.
        body: Raw response body text, if any.
    """

    def __init__(
        self, message: str, status_code: int | None = None, body: str = ""
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    @property
    def kind(self) -> ErrorKind:  # type: ignore[override]
        if self.status_code in NON_RECOVERABLE_STATUS_CODES:
            return ErrorKind.NON_RECOVERABLE
        if self.status_code == 429:
            return ErrorKind.RATE_LIMIT
        return ErrorKind.TRANSPORT


class ProtocolError(LLMError):
    """Raised when a response does not have the expected shape."""

    kind = ErrorKind.PROTOCOL


class ToolExecutionError(LLMError):
    """Raised when a tool is missing, rejects its arguments, or times out."""

    kind = ErrorKind.TOOL_EXECUTION


class DetectionError(LLMError):
    """Raised when the AI detection stage times out or replies unparsably."""

    kind = ErrorKind.DETECTION


class ToolFormatError(ValueError):
    """Raised when a tool definition cannot be normalised."""


def classify_error(exc: BaseException) -> ErrorKind:
    """Map an exception raised during a provider attempt to an ``ErrorKind``.

    Args:
        exc: The exception caught by the retry policy.

    Returns:
        The taxonomy kind used for the retry decision and the failed
        ``AIResponse``.
    """
    if isinstance(exc, LLMError):
        return exc.kind
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException, httpx.TransportError)):
        return ErrorKind.TRANSPORT
    # Anything else was raised while reading a malformed payload.
    return ErrorKind.PROTOCOL
