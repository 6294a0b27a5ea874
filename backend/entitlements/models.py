"""
Entitlements Data Models

Pydantic models for the account profile and purchase events.
These define the structure of documents stored in MongoDB collections.
"""

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from typing import Optional, List, Literal, Any
from datetime import datetime, timezone

from .errors import InvalidPurchaseEvent


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Mongo hands back naive datetimes; everything in the core is UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ==================== PROFILE MODELS ====================

class ActiveEntitlement(BaseModel):
    """Premium grant tied to the purchase transaction that created it"""
    entitlement_id: str
    product_id: str
    granted_at: datetime

    @field_validator("granted_at")
    @classmethod
    def normalize_utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class AccountProfile(BaseModel):
    """Per-account profile document (account_profiles collection)"""
    account_id: str
    created_at: datetime
    is_premium: bool = False
    active_entitlement: Optional[ActiveEntitlement] = None
    metered_usage_count: int = 0
    applied_purchase_ids: List[str] = Field(default_factory=list)
    favorite_ids: List[str] = Field(default_factory=list)
    favorites_count: int = 0
    email: Optional[str] = None
    display_name: Optional[str] = None
    updated_at: Optional[datetime] = None

    @field_validator("created_at", "updated_at")
    @classmethod
    def normalize_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    @model_validator(mode="after")
    def premium_matches_entitlement(self):
        if self.is_premium != (self.active_entitlement is not None):
            raise ValueError(
                f"Profile {self.account_id}: is_premium={self.is_premium} "
                f"but active_entitlement is {'set' if self.active_entitlement else 'missing'}"
            )
        return self


# ==================== PURCHASE MODELS ====================

class PurchaseEvent(BaseModel):
    """
    Purchase notification from the billing SDK.

    Accepts the SDK's camelCase keys (transactionId, productId,
    transactionDate) as well as the snake_case field names.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    transaction_id: str = Field(..., alias="transactionId", min_length=1)
    product_id: str = Field(..., alias="productId", min_length=1)
    purchased_at: Optional[datetime] = Field(None, alias="transactionDate")

    @field_validator("transaction_id", "product_id", mode="before")
    @classmethod
    def strip_ids(cls, value: Any) -> Any:
        if value is None:
            return value
        return str(value).strip()

    @field_validator("purchased_at", mode="before")
    @classmethod
    def parse_transaction_date(cls, value: Any) -> Any:
        # The SDK reports epoch milliseconds, sometimes as a string
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        if isinstance(value, str) and value.strip().isdigit():
            return datetime.fromtimestamp(int(value.strip()) / 1000, tz=timezone.utc)
        return value

    @field_validator("purchased_at")
    @classmethod
    def normalize_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    @classmethod
    def parse(cls, raw: Any) -> "PurchaseEvent":
        """Build an event from an SDK payload, raising InvalidPurchaseEvent if malformed."""
        if isinstance(raw, cls):
            return raw
        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            raise InvalidPurchaseEvent(f"Malformed purchase event ({fields})") from e


class PurchaseResult(BaseModel):
    """Outcome of applying one purchase event"""
    applied: bool
    profile: AccountProfile


# ==================== USAGE MODELS ====================

class UsageSummary(BaseModel):
    """Usage and limits as shown on the profile screen"""
    account_id: str
    tier: Literal["free", "premium"]
    used: int
    allowed_quota: Optional[int] = None  # None for premium
    remaining: int                       # UNLIMITED for premium
    favorites_count: int
    favorites_limit: Optional[int] = None
