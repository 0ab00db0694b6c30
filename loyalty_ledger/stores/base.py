"""Store contracts consumed by the ledger engine, referral resolver and conversion service."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import AsyncIterator

from loyalty_ledger.core.config import get_settings
from loyalty_ledger.models import AuditEvent, PointTransaction, Profile, Referral, ReferralStatus, Wallet


class StoreError(Exception):
    """Backend unreachable, timed out or otherwise failed; safe to retry for reads only."""


class ProfileStore(ABC):
    @abstractmethod
    async def get_profile(self, user_id: str) -> Profile | None:
        ...

    @abstractmethod
    async def create_profile(self, profile: Profile) -> bool:
        """Insert profile; False if one already exists for this user."""
        ...

    @abstractmethod
    async def read_balance(self, user_id: str) -> int | None:
        """Cached loyalty points, or None for an unknown user."""
        ...

    @abstractmethod
    async def write_balance(self, user_id: str, balance: int, expected: int) -> bool:
        """Set balance only if it still equals `expected`; False when it moved."""
        ...

    @abstractmethod
    async def read_referral_code(self, user_id: str) -> str | None:
        ...

    @abstractmethod
    async def write_referral_code(self, user_id: str, code: str) -> bool:
        """Set code if the user has none; False on a taken code or an existing one."""
        ...

    @abstractmethod
    async def find_user_id_by_referral_code(self, code: str) -> str | None:
        ...

    @abstractmethod
    async def set_referred_by(self, user_id: str, referrer_id: str) -> None:
        ...

    @abstractmethod
    def iter_user_ids(self) -> AsyncIterator[str]:
        ...


class LedgerStore(ABC):
    @abstractmethod
    async def insert_entry(self, entry: PointTransaction) -> None:
        ...

    @abstractmethod
    async def delete_entry(self, user_id: str, entry_id: str) -> None:
        """Withdraw an entry whose balance write did not land. Committed entries are never deleted."""
        ...

    @abstractmethod
    async def list_entries(self, user_id: str, limit: int = 50, offset: int = 0) -> list[PointTransaction]:
        """Entries for user, newest first."""
        ...

    @abstractmethod
    async def find_by_idempotency_key(self, user_id: str, key: str) -> PointTransaction | None:
        ...

    @abstractmethod
    async def sum_amounts(self, user_id: str) -> tuple[int, int]:
        """Return (sum of amounts, entry count) for user."""
        ...


class WalletStore(ABC):
    @abstractmethod
    async def get_wallet(self, user_id: str) -> Wallet | None:
        ...

    @abstractmethod
    async def read_balance(self, user_id: str) -> Decimal:
        ...

    @abstractmethod
    async def adjust_balance(self, user_id: str, delta: Decimal) -> Decimal:
        """Apply delta atomically and return the new balance. Raises InsufficientWalletBalance below zero."""
        ...


class ReferralStore(ABC):
    @abstractmethod
    async def insert_referral(self, referral: Referral) -> bool:
        """Insert; False if the referred user already has a referral."""
        ...

    @abstractmethod
    async def find_by_referred_id(self, user_id: str) -> Referral | None:
        ...

    @abstractmethod
    async def find_pending_by_referred_id(self, user_id: str) -> Referral | None:
        ...

    @abstractmethod
    async def update_status(
        self,
        referral_id: str,
        status: ReferralStatus,
        points_earned: int,
        expected_status: ReferralStatus | None = None,
        qualifying_event: str | None = None,
        rewarded_at: datetime | None = None,
    ) -> bool:
        """Update status; when expected_status is set, only if the current status matches."""
        ...

    @abstractmethod
    async def list_by_referrer(self, referrer_id: str) -> list[Referral]:
        """Referrals made by user, newest first."""
        ...

    @abstractmethod
    async def count_by_referrer(self, referrer_id: str) -> int:
        ...


class UserDirectory(ABC):
    @abstractmethod
    async def find_user_id_by_identifier(self, identifier: str) -> str | None:
        """Resolve email (case-insensitive) or user id to a user id; an email match wins."""
        ...


class AuditStore(ABC):
    @abstractmethod
    async def append(self, event: AuditEvent) -> None:
        ...


@dataclass
class Stores:
    profiles: ProfileStore
    ledger: LedgerStore
    wallets: WalletStore
    referrals: ReferralStore
    directory: UserDirectory
    audit: AuditStore


def get_stores() -> Stores:
    settings = get_settings()
    if settings.store_backend == "memory":
        from loyalty_ledger.stores.memory import build_memory_stores
        return build_memory_stores()
    from loyalty_ledger.stores.mongo import build_mongo_stores
    return build_mongo_stores()
