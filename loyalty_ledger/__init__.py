"""Loyalty points ledger, referral rewards and wallet conversion."""
