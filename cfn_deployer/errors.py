"""errors.py — Failure taxonomy and the reason codes recorded on attempts.

Structural errors (``NotConfigured``, ``InvalidConfiguration``,
``MalformedBuild``) are fatal and never retried. ``TransientAwsError`` and
lock contention are retried with bounded backoff. ``LockLost`` aborts the
attempt: the run can no longer assume exclusive access to its target.
"""
from __future__ import annotations

from botocore.exceptions import BotoCoreError, ClientError

REASON_NOT_CONFIGURED = "NotConfigured"
REASON_MALFORMED_BUILD = "MalformedBuild"
REASON_LOCK_TIMEOUT = "LockTimeout"
REASON_LOCK_LOST = "LockLost"
REASON_OPERATION_FAILED = "OperationFailed"
REASON_OPERATION_TIMED_OUT = "OperationTimedOut"
REASON_DEADLINE_EXCEEDED = "DeadlineExceeded"
REASON_TRANSIENT_EXHAUSTED = "TransientRetriesExhausted"
REASON_UNEXPECTED = "UnexpectedError"

_TRANSIENT_ERROR_CODES = {
    "Throttling",
    "ThrottlingException",
    "ThrottledException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "ProvisionedThroughputExceededException",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "InternalFailure",
    "InternalServerError",
    "RequestTimeout",
    "RequestTimeoutException",
}


class DeployerError(Exception):
    """Base exception; ``reason`` is the machine-readable code stored on attempts."""

    reason = REASON_UNEXPECTED


class NotConfigured(DeployerError):
    """No Target is configured for the requested environment."""

    reason = REASON_NOT_CONFIGURED


class InvalidConfiguration(DeployerError, ValueError):
    """A registry write failed validation."""

    reason = "InvalidConfiguration"


class MalformedBuild(DeployerError, ValueError):
    reason = REASON_MALFORMED_BUILD


class LockLost(DeployerError):
    """Lease renewal was contradicted by another holder."""

    reason = REASON_LOCK_LOST


class ConcurrentModification(DeployerError):
    """A compare-and-swap write lost against a concurrent writer."""


class PromotionError(DeployerError):
    pass


class TransientAwsError(DeployerError):
    reason = REASON_TRANSIENT_EXHAUSTED


class InvalidTransition(DeployerError, ValueError):
    pass


def _error_code(exc: BaseException) -> str:
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Code") or "")
    return ""


def _is_transient(exc: BaseException) -> bool:
    """True for throttling, service-side and connection failures."""
    if isinstance(exc, TransientAwsError):
        return True
    if isinstance(exc, ClientError):
        return _error_code(exc) in _TRANSIENT_ERROR_CODES
    return isinstance(exc, BotoCoreError)
