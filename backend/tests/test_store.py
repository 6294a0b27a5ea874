"""
Unit Tests for EntitlementStore
===============================

Tests:
1. Idempotent profile creation
2. Merge updates touch only the named fields
3. NotFound / conflict / unavailable error mapping
"""

import asyncio
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock
from pymongo.errors import AutoReconnect, NetworkTimeout

from entitlements.errors import ProfileNotFound, StoreUnavailable, MergeConflict
from entitlements.store import EntitlementStore

from conftest import T0, ACCOUNT_ID, FlakyCollection


class TestCreateIfAbsent:
    """Profile initialization at signup."""

    @pytest.mark.asyncio
    async def test_new_profile_defaults(self, services):
        profile = await services.store.create_if_absent(
            ACCOUNT_ID, created_at=T0, email="cook@example.com", display_name="Cook"
        )

        assert profile.account_id == ACCOUNT_ID
        assert profile.created_at == T0
        assert profile.is_premium is False
        assert profile.active_entitlement is None
        assert profile.metered_usage_count == 0
        assert profile.applied_purchase_ids == []
        assert profile.favorites_count == 0
        assert profile.email == "cook@example.com"

    @pytest.mark.asyncio
    async def test_existing_profile_returned_unchanged(self, services, profile):
        await services.meter.record_consumption(ACCOUNT_ID)

        again = await services.store.create_if_absent(
            ACCOUNT_ID, created_at=T0 + timedelta(days=30), email="other@example.com"
        )

        assert again.created_at == T0
        assert again.metered_usage_count == 1
        assert again.email is None

    @pytest.mark.asyncio
    async def test_concurrent_creation_makes_one_document(self, services, db):
        results = await asyncio.gather(*[
            services.store.create_if_absent(ACCOUNT_ID, created_at=T0) for _ in range(10)
        ])

        assert all(r.account_id == ACCOUNT_ID for r in results)
        assert await db.account_profiles.count_documents({"account_id": ACCOUNT_ID}) == 1


class TestGet:

    @pytest.mark.asyncio
    async def test_missing_profile(self, services):
        with pytest.raises(ProfileNotFound) as exc_info:
            await services.store.get("nobody")

        assert exc_info.value.account_id == "nobody"
        assert exc_info.value.error_code == "PROFILE_NOT_FOUND"


class TestApplyMerge:
    """Partial-field merge semantics."""

    @pytest.mark.asyncio
    async def test_merge_keeps_unnamed_fields(self, services, profile):
        await services.meter.record_consumption(ACCOUNT_ID)

        merged = await services.store.apply_merge(ACCOUNT_ID, {"display_name": "Chef"})

        assert merged.display_name == "Chef"
        assert merged.metered_usage_count == 1
        assert merged.created_at == T0
        assert merged.updated_at is not None

    @pytest.mark.asyncio
    async def test_increment_and_set_union(self, services, profile):
        await services.store.apply_merge(ACCOUNT_ID, add_to_set={"favorite_ids": "r1"})
        merged = await services.store.apply_merge(
            ACCOUNT_ID,
            increment={"metered_usage_count": 2},
            add_to_set={"favorite_ids": "r1"},
        )

        assert merged.metered_usage_count == 2
        assert merged.favorite_ids == ["r1"]

    @pytest.mark.asyncio
    async def test_immutable_fields_rejected(self, services, profile):
        with pytest.raises(ValueError):
            await services.store.apply_merge(ACCOUNT_ID, {"created_at": T0 + timedelta(days=1)})

    @pytest.mark.asyncio
    async def test_missing_profile(self, services):
        with pytest.raises(ProfileNotFound):
            await services.store.apply_merge("nobody", increment={"metered_usage_count": 1})

    @pytest.mark.asyncio
    async def test_guard_mismatch_is_conflict(self, services, profile):
        with pytest.raises(MergeConflict):
            await services.store.apply_merge(
                ACCOUNT_ID,
                increment={"metered_usage_count": 1},
                guard={"metered_usage_count": {"$gte": 5}},
            )

        unchanged = await services.store.get(ACCOUNT_ID)
        assert unchanged.metered_usage_count == 0

    @pytest.mark.asyncio
    async def test_guard_on_updated_field_returns_new_state(self, services, profile):
        # The write invalidates its own guard; the post-image must still come back
        merged = await services.store.apply_merge(
            ACCOUNT_ID,
            add_to_set={"applied_purchase_ids": "tx1"},
            guard={"applied_purchase_ids": {"$ne": "tx1"}},
        )

        assert merged.applied_purchase_ids == ["tx1"]

        with pytest.raises(MergeConflict):
            await services.store.apply_merge(
                ACCOUNT_ID,
                add_to_set={"applied_purchase_ids": "tx1"},
                guard={"applied_purchase_ids": {"$ne": "tx1"}},
            )

    @pytest.mark.asyncio
    async def test_usage_cannot_decrease(self, services, profile):
        await services.meter.record_consumption(ACCOUNT_ID)

        with pytest.raises(ValueError):
            await services.store.apply_merge(ACCOUNT_ID, increment={"metered_usage_count": -1})

        assert (await services.store.get(ACCOUNT_ID)).metered_usage_count == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("update", [
        {"fields": {"metered_usage_count": 5}, "increment": {"metered_usage_count": 1}},
        {"fields": {"updated_at": T0}, "increment": {"updated_at": 1}},
        {"add_to_set": {"favorite_ids": "r1"}, "pull": {"favorite_ids": "r2"}},
    ])
    async def test_field_named_by_two_operators(self, services, profile, update):
        with pytest.raises(ValueError):
            await services.store.apply_merge(ACCOUNT_ID, **update)

    @pytest.mark.asyncio
    async def test_negative_favorites_increment_allowed(self, services, profile):
        await services.store.apply_merge(ACCOUNT_ID, increment={"favorites_count": 1}, add_to_set={"favorite_ids": "r1"})

        merged = await services.store.apply_merge(ACCOUNT_ID, increment={"favorites_count": -1}, pull={"favorite_ids": "r1"})

        assert merged.favorites_count == 0
        assert merged.favorite_ids == []


class TestStoreUnavailable:
    """Transient backend failures surface as StoreUnavailable."""

    @pytest.mark.asyncio
    async def test_connection_failure_on_write(self, services, profile):
        services.store.collection = FlakyCollection(
            services.store.collection, "find_one_and_update", 1, AutoReconnect("primary stepped down")
        )

        with pytest.raises(StoreUnavailable) as exc_info:
            await services.store.apply_merge(ACCOUNT_ID, increment={"metered_usage_count": 1})

        assert isinstance(exc_info.value.__cause__, AutoReconnect)

        # Retry succeeds once the backend recovers
        merged = await services.store.apply_merge(ACCOUNT_ID, increment={"metered_usage_count": 1})
        assert merged.metered_usage_count == 1

    @pytest.mark.asyncio
    async def test_network_timeout_on_read(self):
        collection = MagicMock()
        collection.find_one = AsyncMock(side_effect=NetworkTimeout("timed out"))
        db = MagicMock()
        db.__getitem__.return_value = collection

        store = EntitlementStore(db)

        with pytest.raises(StoreUnavailable):
            await store.get(ACCOUNT_ID)

    @pytest.mark.asyncio
    async def test_slow_store_times_out(self):
        async def hang(*args, **kwargs):
            await asyncio.sleep(10)

        collection = MagicMock()
        collection.find_one = hang
        db = MagicMock()
        db.__getitem__.return_value = collection

        store = EntitlementStore(db, timeout=0.01)

        with pytest.raises(StoreUnavailable):
            await store.get(ACCOUNT_ID)
