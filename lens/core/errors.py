"""
Error taxonomy for the analytics engine.

Only the Fetch Orchestrator converts upstream faults into `SourceFailure`
records; everything above it is total once given valid inputs.
"""

import re
from typing import Optional

_SECRET_PATTERN = re.compile(r"(api-key=|api_key=|token=)[^&\s\"']+", re.IGNORECASE)


def redact(text: str) -> str:
    """Mask API keys embedded in URLs or error text."""
    return _SECRET_PATTERN.sub(r"\1REDACTED", str(text))


class LensError(Exception):
    """Base class for all engine errors."""


class ValidationError(LensError):
    """A caller-supplied identifier or event is structurally invalid."""


class OutOfOrderEventError(ValidationError):
    """A trade event is older than the last event applied to a position."""


class MalformedRecordError(LensError):
    """A raw upstream record lacks a required field. Dropped and counted."""

    def __init__(self, reason: str, detail: str = ""):
        super().__init__(f"{reason}: {detail}" if detail else reason)
        self.reason = reason


class ConfigurationError(LensError):
    """Missing credential/endpoint or an invalid threshold combination."""


class SourceError(LensError):
    """An upstream call failed (HTTP status, RPC error, malformed payload)."""

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        status: Optional[int] = None,
        kind: Optional[str] = None,
    ):
        super().__init__(redact(message))
        self.retryable = retryable
        self.status = status
        self.kind = kind

    @classmethod
    def from_status(cls, status: int, message: str) -> "SourceError":
        """Rate limits and 5xx are retryable, every other 4xx is not."""
        retryable = status == 429 or status >= 500
        return cls(message, retryable=retryable, status=status)


class IncompletePaginationError(SourceError):
    """Pagination hit its safety cap where a complete result is required."""

    def __init__(self, message: str):
        super().__init__(message, retryable=False, kind="incomplete")
