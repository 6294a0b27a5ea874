"""
Entitlement error taxonomy.

Every error carries a stable error_code so callers can map it to UI
messaging without string matching.
"""

from typing import Optional

from .config import ERROR_CODES


class EntitlementError(Exception):
    """Base class for errors raised by the entitlements core."""

    error_code = "ENTITLEMENT_ERROR"

    def __init__(self, message: Optional[str] = None, account_id: Optional[str] = None):
        self.account_id = account_id
        super().__init__(message or ERROR_CODES.get(self.error_code, self.error_code))


class ProfileNotFound(EntitlementError):
    """No profile exists for the account. Not retried."""

    error_code = "PROFILE_NOT_FOUND"


class StoreUnavailable(EntitlementError):
    """Transient backend failure or timeout. Safe to retry."""

    error_code = "STORE_UNAVAILABLE"


class InvalidPurchaseEvent(EntitlementError):
    """Malformed purchase notification. Discarded, never retried."""

    error_code = "INVALID_PURCHASE_EVENT"


class MergeConflict(EntitlementError):
    """A conditional merge found the profile but its guard did not match."""

    error_code = "MERGE_CONFLICT"


class QuotaExceeded(EntitlementError):
    """Raised by the action guard when a free account is out of quota."""

    error_code = "QUOTA_EXCEEDED"

    def __init__(self, account_id: Optional[str] = None, remaining: int = 0):
        self.remaining = remaining
        super().__init__(account_id=account_id)
