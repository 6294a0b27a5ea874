"""
Service wiring.

Builds the store, meter, reconciler and guard once per process (or per
test) so callers receive them explicitly instead of reaching for globals.
"""

from datetime import datetime
from typing import Callable, Optional

from .config import STORE_TIMEOUT_SECONDS
from .guard import MeteredActionGuard
from .reconciler import PurchaseReconciler
from .store import EntitlementStore
from .usage_meter import UsageMeter


class EntitlementServices:
    """Container for the entitlement components sharing one database."""

    def __init__(
        self,
        db,
        clock: Optional[Callable[[], datetime]] = None,
        timeout: float = STORE_TIMEOUT_SECONDS,
    ):
        self.store = EntitlementStore(db, timeout=timeout)
        self.meter = UsageMeter(self.store, clock=clock)
        self.reconciler = PurchaseReconciler(self.store, clock=clock)
        self.guard = MeteredActionGuard(self.meter)
