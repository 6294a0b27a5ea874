"""
Usage Meter

Gates and accounts for metered AI actions, and enforces the free-tier
favorites limit.

Allowance rule (free tier only, premium is always allowed):
- weeks_since_creation = whole days since signup // 7
- allowed_quota = (weeks_since_creation + 1) * 2
- allowed iff is_premium or metered_usage_count < allowed_quota

The allowance is cumulative over the account's lifetime: 2 units at signup
and 2 more at the start of every following 7-day period. Unused units are
never taken away.

Decisions are advisory reads. Two callers racing for the last unit may
both be allowed; usage itself is always counted exactly because
record_consumption is an atomic $inc.
"""

import logging
from datetime import datetime, timezone, timedelta
from typing import Callable, Optional

from .config import FREE_UNITS_PER_PERIOD, QUOTA_PERIOD_DAYS, FREE_FAVORITES_LIMIT, UNLIMITED
from .errors import MergeConflict
from .models import AccountProfile, UsageSummary
from .store import EntitlementStore

logger = logging.getLogger(__name__)


def weeks_since_creation(created_at: datetime, now: datetime) -> int:
    """Completed quota periods since signup, counted in whole days."""
    whole_days = (now - created_at) // timedelta(days=1)
    return max(0, whole_days) // QUOTA_PERIOD_DAYS


def allowed_quota(created_at: datetime, now: datetime) -> int:
    """Cumulative number of metered actions a free account may have used by now."""
    return (weeks_since_creation(created_at, now) + 1) * FREE_UNITS_PER_PERIOD


class UsageMeter:
    """Quota decisions and usage accounting for a single profile store."""

    def __init__(self, store: EntitlementStore, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _quota_for(self, profile: AccountProfile) -> int:
        return allowed_quota(profile.created_at, self._clock())

    async def can_consume(self, account_id: str) -> bool:
        """Whether the account may run a metered action right now. Never mutates."""
        profile = await self.store.get(account_id)
        if profile.is_premium:
            return True

        quota = self._quota_for(profile)
        allowed = profile.metered_usage_count < quota
        if not allowed:
            logger.info(
                f"Account {account_id} reached free quota "
                f"({profile.metered_usage_count}/{quota})"
            )
        return allowed

    async def record_consumption(self, account_id: str) -> int:
        """
        Count one metered action and return the new lifetime count.

        Call only after the gated action has succeeded. A crash between the
        action and this call under-counts usage; that imprecision is accepted.
        """
        profile = await self.store.apply_merge(
            account_id,
            increment={"metered_usage_count": 1},
        )
        logger.debug(f"Account {account_id} metered usage now {profile.metered_usage_count}")
        return profile.metered_usage_count

    async def remaining_quota(self, account_id: str) -> int:
        """Units left for a free account, or UNLIMITED for premium."""
        profile = await self.store.get(account_id)
        if profile.is_premium:
            return UNLIMITED
        return max(0, self._quota_for(profile) - profile.metered_usage_count)

    async def can_add_favorite(self, account_id: str) -> bool:
        profile = await self.store.get(account_id)
        return profile.is_premium or profile.favorites_count < FREE_FAVORITES_LIMIT

    async def add_favorite(self, account_id: str, recipe_id: str) -> bool:
        """
        Save a recipe to favorites.

        The limit check and the write are one conditional update, so
        concurrent adds cannot push a free account past the limit.

        Returns:
            True if the recipe is now a favorite (including when it already
            was), False if a free account is at its limit.
        """
        guard = {
            "favorite_ids": {"$ne": recipe_id},
            "$or": [
                {"is_premium": True},
                {"favorites_count": {"$lt": FREE_FAVORITES_LIMIT}},
            ],
        }
        try:
            await self.store.apply_merge(
                account_id,
                increment={"favorites_count": 1},
                add_to_set={"favorite_ids": recipe_id},
                guard=guard,
            )
            return True
        except MergeConflict:
            profile = await self.store.get(account_id)
            if recipe_id in profile.favorite_ids:
                return True
            logger.info(f"Account {account_id} at free favorites limit ({FREE_FAVORITES_LIMIT})")
            return False

    async def remove_favorite(self, account_id: str, recipe_id: str) -> bool:
        """Remove a recipe from favorites. False if it was not a favorite."""
        try:
            await self.store.apply_merge(
                account_id,
                increment={"favorites_count": -1},
                pull={"favorite_ids": recipe_id},
                guard={"favorite_ids": recipe_id},
            )
            return True
        except MergeConflict:
            return False

    async def usage_summary(self, account_id: str) -> UsageSummary:
        """Usage and limits for display."""
        profile = await self.store.get(account_id)

        if profile.is_premium:
            return UsageSummary(
                account_id=account_id,
                tier="premium",
                used=profile.metered_usage_count,
                remaining=UNLIMITED,
                favorites_count=profile.favorites_count,
            )

        quota = self._quota_for(profile)
        return UsageSummary(
            account_id=account_id,
            tier="free",
            used=profile.metered_usage_count,
            allowed_quota=quota,
            remaining=max(0, quota - profile.metered_usage_count),
            favorites_count=profile.favorites_count,
            favorites_limit=FREE_FAVORITES_LIMIT,
        )
