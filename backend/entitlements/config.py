"""
Entitlements Configuration and Constants

Free tier allowances, product catalog and error messages are defined here.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv(Path(__file__).parent.parent / ".env")

# ==================== FREE TIER METERING ====================
# Units granted at signup and again at the start of each period.
# The allowance is cumulative: unused units carry over forever.
FREE_UNITS_PER_PERIOD = 2
QUOTA_PERIOD_DAYS = 7

# Favorites a free account may keep
FREE_FAVORITES_LIMIT = 3

# Returned by remaining_quota() for premium accounts
UNLIMITED = -1

# ==================== PREMIUM PRODUCTS ====================
# Store SKUs as configured in App Store Connect / Google Play Console
PREMIUM_PRODUCTS = {
    "ios": {
        "com.mixmind.app.premium_monthly": "monthly",
        "com.mixmind.app.premium_yearly": "yearly",
    },
    "android": {
        "premium_subscription": "monthly",
        "premium_yearly_subscription": "yearly",
    },
}

# ==================== STORE ====================
PROFILES_COLLECTION = "account_profiles"
META_COLLECTION = "entitlements_meta"

# Upper bound for a single store round-trip
STORE_TIMEOUT_SECONDS = float(os.environ.get("ENTITLEMENTS_STORE_TIMEOUT_SECONDS", "5"))

# ==================== ERROR CODES ====================
ERROR_CODES = {
    "PROFILE_NOT_FOUND": "Account profile not found. Please sign in again.",
    "STORE_UNAVAILABLE": "Account service is temporarily unavailable. Please try again.",
    "INVALID_PURCHASE_EVENT": "Purchase notification is missing a transaction or product id.",
    "MERGE_CONFLICT": "Account profile changed during update.",
    "QUOTA_EXCEEDED": "Free AI limit reached. Upgrade to Premium for unlimited generations.",
}


def plan_for_product(product_id: str) -> str:
    """Resolve a store SKU to its plan name ('monthly', 'yearly' or 'unknown')."""
    for catalog in PREMIUM_PRODUCTS.values():
        if product_id in catalog:
            return catalog[product_id]
    return "unknown"
