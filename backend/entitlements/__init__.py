"""
Entitlements Module
Premium entitlement and metered AI usage for MixMind accounts

This module provides:
- Account profile store (premium flag, usage counter, dedup ledger)
- Usage metering for the free tier (cumulative weekly allowance)
- Favorites limit for the free tier
- Idempotent purchase and restore reconciliation
- Guard helper for gated AI actions

Collections used:
- account_profiles: One document per account
- entitlements_meta: Init version stamp
"""

__version__ = "1.0.0"
