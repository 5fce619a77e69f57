"""
Typed error taxonomy for card management.

Callers branch on the exception class (or its stable `code`), never on
the message text. Each error knows the HTTP status it maps to so the API
layer can render it without a lookup table.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class CardManagementError(Exception):
    """Base class for all card management failures."""

    code: str = "card_error"
    http_status: int = 500
    retryable: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def to_response(self) -> Dict[str, Any]:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "retryable": self.retryable,
                "details": self.details,
            }
        }


class QuotaExceededError(CardManagementError):
    """The user already owns as many live cards as their plan allows."""

    code = "quota_exceeded"
    http_status = 402

    def __init__(self, plan: str, limit: int, used: int) -> None:
        super().__init__(
            f"Card limit reached for plan '{plan}' ({used}/{limit}). "
            "Upgrade your plan to create more cards.",
            details={"plan": plan, "limit": limit, "used": used},
        )
        self.plan = plan
        self.limit = limit
        self.used = used


class SlugGenerationError(CardManagementError):
    """No free slug was found within the allowed number of probes."""

    code = "slug_generation_failed"
    http_status = 409

    def __init__(self, base_slug: str, attempts: int) -> None:
        super().__init__(
            f"Could not find a free slug for '{base_slug}' after {attempts} attempts",
            details={"base_slug": base_slug, "attempts": attempts},
        )
        self.base_slug = base_slug
        self.attempts = attempts


class PermissionDeniedError(CardManagementError):
    """The caller does not own the targeted resource."""

    code = "permission_denied"
    http_status = 403


class NotFoundError(CardManagementError):
    code = "not_found"
    http_status = 404


class TransientStoreError(CardManagementError):
    """
    Transaction conflict or connectivity problem in the underlying store.

    Retried internally a bounded number of times before reaching callers.
    """

    code = "store_unavailable"
    http_status = 503
    retryable = True


class CardValidationError(CardManagementError):
    code = "invalid_request"
    http_status = 400


class CommitOutcomeUnknownError(CardManagementError):
    """
    The store could not confirm whether a transaction committed.

    Not retryable: the change may already be durable, so callers must
    re-read state before deciding to repeat it.
    """

    code = "commit_outcome_unknown"
    http_status = 503
