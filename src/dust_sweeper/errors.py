"""Exception hierarchy for the sweep engine.

Errors fall into four families: transient failures that retry policies may
repeat, data-unavailable outcomes, validation rejections raised before any
state is touched, and fatal settlement failures recorded on the sweep.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class SweeperError(Exception):
    """Base class for every error raised by the package.

    ``retryable`` tells the job queue and the quote selector whether repeating
    the same operation can succeed.
    """

    retryable = False

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.context = context or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        if not self.context:
            return self.message
        detail = ", ".join(f"{key}={value}" for key, value in self.context.items())
        return f"{self.message} ({detail})"


class ConfigurationError(SweeperError):
    pass


class TransientError(SweeperError):
    retryable = True


class ProviderError(TransientError):
    """An external provider failed at the transport level or returned an error status."""

    def __init__(
        self,
        message: str,
        http_status: Optional[int] = None,
        body: Optional[str] = None,
        cause: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.http_status = http_status
        self.body = body
        self.cause = cause
        merged = dict(context or {})
        if http_status is not None:
            merged["status"] = http_status
        if body:
            merged["body"] = body[:200]
        if cause is not None:
            merged["cause"] = cause
        super().__init__(message, merged)


class ConcurrentModification(TransientError):
    """A conditional update lost the race against another writer."""


class PriceUnavailable(SweeperError):
    """Every configured price source failed for a token."""


class ValidationError(SweeperError):
    pass


class QuoteExpired(ValidationError):
    pass


class InvalidTransition(ValidationError):
    pass


class PaymentRequired(ValidationError):
    pass


class SweepNotFound(SweeperError):
    pass


class SettlementError(SweeperError):
    """The settlement target rejected or reverted a transaction."""


class JobTimeout(SweeperError):
    pass


class JobFailed(SweeperError):
    def __init__(self, job_id: str, reason: str) -> None:
        self.job_id = job_id
        self.reason = reason
        super().__init__(reason, {"job_id": job_id})


class UnknownJob(SweeperError):
    """No job with this id is tracked, it was never enqueued or has been pruned."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__("unknown job", {"job_id": job_id})
