from __future__ import annotations


class CodedError(Exception):
    """Base for errors that carry retry guidance."""

    recoverable: bool = False
    severity: str = "error"


class TransientError(CodedError):
    """Failure expected to clear on retry (rate limits, network blips)."""

    recoverable = True
    severity = "warning"


class PermanentError(CodedError):
    """Failure that will not clear without operator action."""

    recoverable = False
    severity = "error"
