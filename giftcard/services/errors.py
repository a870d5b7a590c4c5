"""
Redemption error taxonomy.

Every error carries a machine-readable ``reason_code`` next to the human
message so the HTTP layer and clients never parse message text.
"""

from __future__ import annotations

from typing import Any


class GiftCardError(Exception):
    reason_code = "gift_card_error"

    def __init__(self, message: str, *, reason_code: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        if reason_code is not None:
            self.reason_code = reason_code
        self.details = details or {}


class GiftCardNotFound(GiftCardError):
    reason_code = "code_not_found"


class ConfigurationError(GiftCardError):
    """Template payload is malformed; operators must fix the template."""

    reason_code = "configuration_error"


class IneligibleError(GiftCardError):
    """Expected business refusal: condition, limit or availability."""

    reason_code = "ineligible"


class ConflictError(GiftCardError):
    """The code was consumed by a concurrent redemption."""

    reason_code = "code_already_used"


class ApplicationError(GiftCardError):
    """A mutation primitive failed; the transaction was rolled back."""

    reason_code = "application_failed"


class RetryableError(GiftCardError):
    """Lock wait, deadlock or busy database. Safe for the caller to retry."""

    reason_code = "storage_busy"
