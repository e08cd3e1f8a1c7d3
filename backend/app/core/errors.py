"""
Centralized error handling for waitlist services and API routes.
Typed exceptions raised by services plus one helper so routes stay thin and new error types are easy to add.
"""
from __future__ import annotations

from typing import Callable

from fastapi import HTTPException

# ---------------------------------------------------------------------------
# Exception taxonomy
# ---------------------------------------------------------------------------


class WaitlistError(Exception):
    """Base class for waitlist failures surfaced to callers."""


class ValidationError(WaitlistError):
    """Bad input (e.g. missing phone). Rejected synchronously, never retried."""


class NotFound(WaitlistError):
    """Unknown token, entry or slot."""


class InvalidToken(NotFound):
    """Token missing, already consumed, expired, or issued for another purpose."""


class ProbeError(WaitlistError):
    """Availability check failed (network, auth). The scheduler treats it as 'not available'."""


class NotifierError(WaitlistError):
    """Outbound SMS/email failed. Logged; never undoes a state transition."""


# ---------------------------------------------------------------------------
# Constants: status codes and user-facing messages
# ---------------------------------------------------------------------------

STATUS_BAD_REQUEST = 400
STATUS_NOT_FOUND = 404
STATUS_BAD_GATEWAY = 502  # calendar / SMS provider failed
STATUS_INTERNAL_ERROR = 500

MSG_INVALID_TOKEN = "Invalid or expired token"


# ---------------------------------------------------------------------------
# Error rules: (predicate, status_code, detail). First match wins.
# Add new rules here instead of scattering checks in routes.
# ---------------------------------------------------------------------------

WAITLIST_ERROR_RULES: list[tuple[Callable[[Exception], bool], int, str | None]] = [
    (lambda e: isinstance(e, InvalidToken), STATUS_NOT_FOUND, MSG_INVALID_TOKEN),
    (lambda e: isinstance(e, NotFound), STATUS_NOT_FOUND, None),
    (lambda e: isinstance(e, ValidationError), STATUS_BAD_REQUEST, None),
    (lambda e: isinstance(e, (ProbeError, NotifierError)), STATUS_BAD_GATEWAY, None),
]


def waitlist_error_to_http(exc: Exception) -> HTTPException:
    """
    Map a service exception into an HTTPException.
    Uses WAITLIST_ERROR_RULES; a rule with detail=None passes the exception message through.
    Anything unmatched becomes a 500.
    """
    for predicate, status_code, detail in WAITLIST_ERROR_RULES:
        if predicate(exc):
            return HTTPException(status_code=status_code, detail=detail or str(exc))
    return HTTPException(status_code=STATUS_INTERNAL_ERROR, detail=str(exc))
