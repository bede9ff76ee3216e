"""
Error taxonomy for the routing engine.
======================================
PolicyDenyError        — no eligible model / budget exceeded / compliance block.
                         Reported to the caller, never retried.
ProviderError          — raised by provider adapters. ErrorClass decides whether
                         the orchestrator retries the same candidate or moves on.
ExhaustedFallbackError — every candidate in the chain failed.
InvalidRequestError    — a request field could not be parsed.
InvalidPolicyError     — rejected at load/publish time; never reaches requests.

Firewall degradation is not an exception: it is recorded on the
FirewallOutcome (degraded=True) and counted, never surfaced as a failure.

Every error raised out of RoutingEngine.route() carries the request's
audit_id and a reason code.
"""
from __future__ import annotations

import asyncio
from enum import Enum
from typing import Optional


class ErrorClass(str, Enum):
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    AUTH = "auth"
    BAD_REQUEST = "bad_request"
    NOT_FOUND = "not_found"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE


_RETRYABLE = frozenset({ErrorClass.TIMEOUT, ErrorClass.RATE_LIMIT, ErrorClass.SERVER_ERROR})


class DenyReason(str, Enum):
    NO_ELIGIBLE_MODEL = "no_eligible_model"
    BUDGET_EXCEEDED = "budget_exceeded"
    COMPLIANCE_BLOCK = "compliance_block"
    NO_ACTIVE_POLICY = "no_active_policy"


class RoutingError(Exception):
    """Base for everything the engine surfaces to a caller."""

    def __init__(self, message: str, reason: str, audit_id: Optional[str] = None):
        super().__init__(message)
        self.reason = reason
        self.audit_id = audit_id


class PolicyDenyError(RoutingError):
    def __init__(self, reason: DenyReason | str, detail: str = "",
                 audit_id: Optional[str] = None):
        reason_val = reason.value if isinstance(reason, DenyReason) else str(reason)
        msg = f"Request denied by policy: {reason_val}"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg, reason=reason_val, audit_id=audit_id)
        self.detail = detail


class ExhaustedFallbackError(RoutingError):
    """
    Raised when every candidate in the fallback chain failed.

    Attributes
    ----------
    attempted : list[str]  — model names actually tried, in order
    hint      : str        — remediation hint for the caller
    """

    def __init__(self, attempted: list[str], last_error: Optional[BaseException] = None,
                 audit_id: Optional[str] = None):
        self.attempted = list(attempted)
        self.last_error = last_error
        self.hint = (
            "All candidate models failed. Retry later, widen the app's "
            "subscriptions or policy fallbacks, or enable minimal_completion."
        )
        chain = " -> ".join(self.attempted) or "<none>"
        super().__init__(
            f"Fallback chain exhausted after trying [{chain}]: {last_error}",
            reason="exhausted_fallback",
            audit_id=audit_id,
        )


class InvalidRequestError(RoutingError):
    """A request field could not be parsed (e.g. an unknown sensitivity level)."""

    def __init__(self, detail: str, audit_id: Optional[str] = None):
        super().__init__(f"Invalid request: {detail}", reason="invalid_request",
                         audit_id=audit_id)
        self.detail = detail


class InvalidPolicyError(ValueError):
    """Raised by PolicyValidator / PolicyStore.publish with every problem found."""

    def __init__(self, app_id: str, version: str, problems: list[str]):
        self.app_id = app_id
        self.version = version
        self.problems = list(problems)
        super().__init__(
            f"Invalid policy {app_id}@{version}: " + "; ".join(self.problems)
        )


# ─────────────────────────────────────────────────────────────────────────────
# Provider errors
# ─────────────────────────────────────────────────────────────────────────────

class ProviderError(Exception):
    """
    Error reported by a ProviderAdapter.

    retry_after is the provider's hint in seconds (rate limits), if any.
    """

    def __init__(self, message: str, error_class: ErrorClass,
                 retry_after: Optional[float] = None):
        super().__init__(message)
        self.error_class = error_class
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        return self.error_class.retryable


class ProviderTransientError(ProviderError):
    def __init__(self, message: str, error_class: ErrorClass = ErrorClass.SERVER_ERROR,
                 retry_after: Optional[float] = None):
        super().__init__(message, error_class, retry_after)


class ProviderTerminalError(ProviderError):
    def __init__(self, message: str, error_class: ErrorClass = ErrorClass.BAD_REQUEST):
        super().__init__(message, error_class)


def classify_exception(exc: BaseException) -> ProviderError:
    """
    Map an arbitrary SDK exception onto the taxonomy.

    Uses the HTTP status code when the exception exposes one, otherwise
    falls back to message heuristics. Unknown errors are treated as
    transient server errors.
    """
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ProviderTransientError(str(exc) or "timed out", ErrorClass.TIMEOUT)

    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(getattr(exc, "response", None), "status_code", None)
    text = str(exc)
    lower = text.lower()

    if status is not None:
        return _classify_status(int(status), text, exc)
    if "rate_limit" in lower or "rate limit" in lower or "429" in text:
        return ProviderTransientError(text, ErrorClass.RATE_LIMIT,
                                      retry_after=_retry_after(exc))
    if "401" in text or "invalid_authentication" in lower:
        return ProviderTerminalError(text, ErrorClass.AUTH)
    if "not found" in lower:
        return ProviderTerminalError(text, ErrorClass.NOT_FOUND)
    if "invalid_request_error" in lower:
        return ProviderTerminalError(text, ErrorClass.BAD_REQUEST)
    if "timeout" in lower or "timed out" in lower:
        return ProviderTransientError(text, ErrorClass.TIMEOUT)
    return ProviderTransientError(text, ErrorClass.SERVER_ERROR)


def _classify_status(status: int, text: str, exc: BaseException) -> ProviderError:
    if status == 429:
        return ProviderTransientError(text, ErrorClass.RATE_LIMIT,
                                      retry_after=_retry_after(exc))
    if status in (401, 403):
        return ProviderTerminalError(text, ErrorClass.AUTH)
    if status == 404:
        return ProviderTerminalError(text, ErrorClass.NOT_FOUND)
    if status in (400, 422):
        return ProviderTerminalError(text, ErrorClass.BAD_REQUEST)
    if status in (408, 504):
        return ProviderTransientError(text, ErrorClass.TIMEOUT)
    return ProviderTransientError(text, ErrorClass.SERVER_ERROR)


def _retry_after(exc: BaseException) -> Optional[float]:
    headers = getattr(getattr(exc, "response", None), "headers", None)
    if not headers:
        return None
    raw = headers.get("retry-after") if hasattr(headers, "get") else None
    try:
        return float(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None
