"""
Entitlement Store

Single source of truth for account profiles (account_profiles collection).

Reads return a full snapshot of the profile document. Writes are merge
updates: every mutation is one MongoDB update document ($set / $inc /
$addToSet / $pull) applied atomically to a single profile, optionally
conditioned on a guard filter. Fields the caller does not name are never
touched, so concurrent writers of disjoint fields cannot clobber each other.

CRITICAL: Every store call is bounded by a timeout and transient backend
failures surface as StoreUnavailable. No call hangs.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from pydantic import BaseModel
from pymongo import ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError, ExecutionTimeout, WTimeoutError

from .config import PROFILES_COLLECTION, STORE_TIMEOUT_SECONDS
from .errors import ProfileNotFound, StoreUnavailable, MergeConflict
from .models import AccountProfile, as_utc

logger = logging.getLogger(__name__)

IMMUTABLE_FIELDS = frozenset({"account_id", "created_at"})

_TRANSIENT_ERRORS = (ConnectionFailure, ExecutionTimeout, WTimeoutError, asyncio.TimeoutError)


def _to_document(value: Any) -> Any:
    """Convert models and datetimes to the shapes stored in Mongo."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    return value


class EntitlementStore:
    """Async store for account profiles backed by a motor database."""

    def __init__(self, db, timeout: float = STORE_TIMEOUT_SECONDS):
        self.db = db
        self.collection = db[PROFILES_COLLECTION]
        self.timeout = timeout

    async def _call(self, account_id: str, operation):
        try:
            return await asyncio.wait_for(operation, timeout=self.timeout)
        except _TRANSIENT_ERRORS as e:
            logger.error(f"Profile store unavailable for account {account_id}: {e!r}")
            raise StoreUnavailable(account_id=account_id) from e

    async def get(self, account_id: str) -> AccountProfile:
        """Read the current profile snapshot."""
        doc = await self._call(
            account_id,
            self.collection.find_one({"account_id": account_id}, {"_id": 0}),
        )
        if doc is None:
            raise ProfileNotFound(account_id=account_id)
        return AccountProfile.model_validate(doc)

    async def create_if_absent(
        self,
        account_id: str,
        created_at: Optional[datetime] = None,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> AccountProfile:
        """
        Create the profile at signup. Idempotent.

        If a profile already exists it is returned unchanged; none of the
        arguments are applied to it.
        """
        now = datetime.now(timezone.utc)

        profile_doc = {
            "account_id": account_id,
            "created_at": _to_document(created_at or now),
            "is_premium": False,
            "active_entitlement": None,
            "metered_usage_count": 0,
            "applied_purchase_ids": [],
            "favorite_ids": [],
            "favorites_count": 0,
            "email": email,
            "display_name": display_name,
            "updated_at": now.isoformat(),
        }

        # Upsert so concurrent signups for the same account create one document
        try:
            result = await self._call(
                account_id,
                self.collection.update_one(
                    {"account_id": account_id},
                    {"$setOnInsert": profile_doc},
                    upsert=True,
                ),
            )
            if result.upserted_id is not None:
                logger.info(f"Created profile for account {account_id}")
        except DuplicateKeyError:
            # Lost the upsert race on the unique index; the winner's document stands
            logger.warning(f"Concurrent profile creation for account {account_id}, using existing")

        return await self.get(account_id)

    async def apply_merge(
        self,
        account_id: str,
        fields: Optional[Dict[str, Any]] = None,
        *,
        increment: Optional[Dict[str, int]] = None,
        add_to_set: Optional[Dict[str, Any]] = None,
        pull: Optional[Dict[str, Any]] = None,
        guard: Optional[Dict[str, Any]] = None,
    ) -> AccountProfile:
        """
        Atomically merge a partial update into the profile and return the result.

        Args:
            account_id: Profile to update
            fields: Values to $set
            increment: Counters to $inc
            add_to_set: Values to $addToSet (set-union on array fields)
            pull: Values to $pull from array fields
            guard: Extra filter the stored document must match for the
                write to apply (conditional write)

        Raises:
            ProfileNotFound: no profile for account_id
            MergeConflict: profile exists but does not match guard
            StoreUnavailable: transient backend failure or timeout
            ValueError: update the profile invariants or Mongo would reject
        """
        fields = dict(fields or {})
        immutable = IMMUTABLE_FIELDS & fields.keys()
        if immutable:
            raise ValueError(f"Cannot merge immutable profile fields: {sorted(immutable)}")

        # Usage is monotonically non-decreasing
        if (increment or {}).get("metered_usage_count", 0) < 0:
            raise ValueError("metered_usage_count can only be incremented")

        # One operator per field; Mongo rejects conflicting update paths
        seen = set(fields) | {"updated_at"}
        for operands in (increment, add_to_set, pull):
            overlap = seen & set(operands or {})
            if overlap:
                raise ValueError(f"Field updated by more than one operator: {sorted(overlap)}")
            seen |= set(operands or {})

        now = datetime.now(timezone.utc)
        update: Dict[str, Any] = {
            "$set": {
                **{key: _to_document(value) for key, value in fields.items()},
                "updated_at": now.isoformat(),
            }
        }
        if increment:
            update["$inc"] = dict(increment)
        if add_to_set:
            update["$addToSet"] = {key: _to_document(value) for key, value in add_to_set.items()}
        if pull:
            update["$pull"] = dict(pull)

        query = {"account_id": account_id, **(guard or {})}

        doc = await self._call(
            account_id,
            self.collection.find_one_and_update(
                query,
                update,
                return_document=ReturnDocument.AFTER,
            ),
        )

        if doc is None:
            # Distinguish a missing profile from a guard that did not match
            exists = await self._call(
                account_id,
                self.collection.find_one({"account_id": account_id}, {"_id": 1}),
            )
            if exists is None:
                raise ProfileNotFound(account_id=account_id)
            raise MergeConflict(account_id=account_id)

        doc.pop("_id", None)
        return AccountProfile.model_validate(doc)
