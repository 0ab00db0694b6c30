from loyalty_ledger.models.audit import AuditEvent
from loyalty_ledger.models.points import (
    AppendResult,
    BalanceCheck,
    ConversionResult,
    PointReason,
    PointTransaction,
    TransferResult,
    new_id,
)
from loyalty_ledger.models.profile import Profile
from loyalty_ledger.models.referral import Referral, ReferralStats, ReferralStatus
from loyalty_ledger.models.wallet import Wallet, WalletSummary

__all__ = [
    "AuditEvent",
    "AppendResult",
    "BalanceCheck",
    "ConversionResult",
    "PointReason",
    "PointTransaction",
    "TransferResult",
    "new_id",
    "Profile",
    "Referral",
    "ReferralStats",
    "ReferralStatus",
    "Wallet",
    "WalletSummary",
]
