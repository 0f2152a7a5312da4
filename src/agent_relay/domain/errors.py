"""Domain and application errors."""

from __future__ import annotations

from typing import Optional

from agent_relay.config.constants import RETRYABLE_STATUS_CODES, RETRYABLE_MESSAGE_MARKERS


class RelayError(Exception):
    """Base for relay errors."""
    pass


class ValidationError(RelayError):
    """Missing or invalid input (absent session id, no credential configured, ...)."""
    pass


class NotFoundError(RelayError):
    """Session, agent, connector or credential does not exist."""
    pass


class ProviderError(RelayError):
    """A model backend call failed.

    ``status`` is the upstream HTTP status (or ``None`` for transport and
    subprocess failures).  ``retryable`` defaults to the failover
    classification of the status and message; pass it explicitly to override.
    """

    def __init__(self, message: str, status: Optional[int] = None, retryable: Optional[bool] = None) -> None:
        super().__init__(message)
        self.status = status
        self.retryable = is_retryable(status, message) if retryable is None else retryable


class OperationTimeoutError(RelayError, TimeoutError):
    """A lock wait, connector start or run budget expired."""
    pass


class RunCancelledError(RelayError):
    """An abort signal was observed; the run did not finish."""

    def __init__(self, reason: str = "Cancelled") -> None:
        super().__init__(reason)
        self.reason = reason


def is_retryable(status: Optional[int], message: str = "") -> bool:
    """Return True when a failed call may succeed with a different credential."""
    if status is not None and status in RETRYABLE_STATUS_CODES:
        return True
    lowered = (message or "").lower()
    return any(marker in lowered for marker in RETRYABLE_MESSAGE_MARKERS)


def classify_exception(exc: BaseException) -> ProviderError:
    """Normalise any backend exception into a ``ProviderError``."""
    if isinstance(exc, ProviderError):
        return exc
    status = getattr(exc, "status", None)
    response = getattr(exc, "response", None)
    if status is None and response is not None:
        status = getattr(response, "status_code", None)
    return ProviderError(str(exc) or exc.__class__.__name__, status=status)
