"""
Purchase Reconciler

Turns purchase notifications into entitlement changes, exactly once per
transaction id, regardless of delivery order or duplication.

Per transaction: Unseen -> Applied (terminal). Redelivery of an applied
transaction is a successful no-op.

CRITICAL: The dedup check and the entitlement write are ONE conditional
update (guarded on the transaction id being absent from
applied_purchase_ids). Concurrent delivery of the same transaction applies
it once; a failed write leaves the ledger untouched so a retry re-applies
the whole effect.

There is no downgrade path here. Once any purchase is applied the account
stays premium until an external billing-status feed says otherwise.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from .billing import BillingClient, PurchaseEventChannel, sort_purchases_by_recency
from .config import plan_for_product
from .errors import InvalidPurchaseEvent, MergeConflict, StoreUnavailable
from .models import ActiveEntitlement, PurchaseEvent, PurchaseResult
from .store import EntitlementStore

logger = logging.getLogger(__name__)


class PurchaseReconciler:
    """Applies purchase and restore events to account profiles."""

    def __init__(
        self,
        store: EntitlementStore,
        clock: Optional[Callable[[], datetime]] = None,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
    ):
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

    async def apply_purchase(self, account_id: str, event: Any) -> PurchaseResult:
        """
        Apply one purchase to the account.

        Args:
            account_id: Account that owns the purchase
            event: PurchaseEvent or raw SDK payload

        Returns:
            PurchaseResult(applied=True, ...) if this call applied it,
            PurchaseResult(applied=False, ...) if it was already applied

        Raises:
            InvalidPurchaseEvent: missing transaction or product id
            ProfileNotFound: no profile for the account
            StoreUnavailable: write failed; safe to retry
        """
        event = PurchaseEvent.parse(event)
        transaction_id = event.transaction_id

        entitlement = ActiveEntitlement(
            entitlement_id=transaction_id,
            product_id=event.product_id,
            granted_at=self._clock(),
        )

        try:
            profile = await self.store.apply_merge(
                account_id,
                {"is_premium": True, "active_entitlement": entitlement},
                add_to_set={"applied_purchase_ids": transaction_id},
                guard={"applied_purchase_ids": {"$ne": transaction_id}},
            )
        except MergeConflict:
            logger.info(f"Purchase {transaction_id} already applied to account {account_id}, skipping")
            profile = await self.store.get(account_id)
            return PurchaseResult(applied=False, profile=profile)

        logger.info(
            f"Applied purchase {transaction_id} ({plan_for_product(event.product_id)} "
            f"plan, product {event.product_id}) to account {account_id}"
        )
        return PurchaseResult(applied=True, profile=profile)

    async def reconcile_restored(self, account_id: str, purchase_events: Iterable[Any]) -> int:
        """
        Apply a restore list in the order given and count newly applied purchases.

        The last purchase applied becomes the active entitlement, so callers
        that care which product wins must pre-sort the list by recency.
        Malformed entries are logged and skipped. StoreUnavailable aborts the
        sweep; re-running it is safe.
        """
        applied_count = 0
        seen = 0

        for raw in purchase_events:
            seen += 1
            try:
                result = await self.apply_purchase(account_id, raw)
            except InvalidPurchaseEvent as e:
                logger.warning(f"Discarding malformed restored purchase for account {account_id}: {e}")
                continue
            if result.applied:
                applied_count += 1

        logger.info(f"Restore sweep for account {account_id}: {applied_count} of {seen} purchases newly applied")
        return applied_count

    async def restore_from_billing(
        self,
        account_id: str,
        billing: BillingClient,
        sort_by_recency: bool = False,
    ) -> int:
        """
        Restore purchases reported by the billing SDK (startup or "Restore Purchases").

        With sort_by_recency the most recently purchased product ends up as
        the active entitlement; otherwise the SDK's order decides.
        """
        purchases = await billing.list_active_purchases()
        if not purchases:
            logger.info(f"No active purchases to restore for account {account_id}")
            return 0

        if sort_by_recency:
            purchases = sort_purchases_by_recency(purchases)

        return await self.reconcile_restored(account_id, purchases)

    async def consume(self, account_id: str, channel: PurchaseEventChannel) -> int:
        """
        Drain live purchase notifications until the channel is closed.

        Malformed events are dropped. A StoreUnavailable is retried with
        linear backoff up to max_attempts; after that the event is dropped
        and left for the next restore sweep, which will apply it because
        the ledger was never written.

        Returns:
            Number of purchases newly applied
        """
        applied_count = 0

        async for raw in channel:
            try:
                event = PurchaseEvent.parse(raw)
            except InvalidPurchaseEvent as e:
                logger.warning(f"Dropping malformed purchase event for account {account_id}: {e}")
                continue

            for attempt in range(1, self.max_attempts + 1):
                try:
                    result = await self.apply_purchase(account_id, event)
                except StoreUnavailable:
                    if attempt == self.max_attempts:
                        logger.error(
                            f"Giving up on purchase {event.transaction_id} for account {account_id} "
                            f"after {attempt} attempts; next restore sweep will apply it"
                        )
                        break
                    logger.warning(
                        f"Store unavailable applying purchase {event.transaction_id}, "
                        f"retry {attempt}/{self.max_attempts - 1}"
                    )
                    await asyncio.sleep(self.retry_delay * attempt)
                    continue

                if result.applied:
                    applied_count += 1
                break

        return applied_count
