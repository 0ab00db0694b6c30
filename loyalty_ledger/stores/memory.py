"""In-process stores for tests and local runs (STORE_BACKEND=memory)."""

import asyncio
from datetime import datetime
from decimal import Decimal
from typing import AsyncIterator

from loyalty_ledger.core.config import get_settings
from loyalty_ledger.core.exceptions import InsufficientWalletBalance
from loyalty_ledger.models import AuditEvent, PointTransaction, Profile, Referral, ReferralStatus, Wallet
from loyalty_ledger.stores.base import (
    AuditStore,
    LedgerStore,
    ProfileStore,
    ReferralStore,
    Stores,
    UserDirectory,
    WalletStore,
)


async def _io() -> None:
    # Yield to the loop so callers interleave the way they would on a real round trip.
    await asyncio.sleep(0)


class MemoryProfileStore(ProfileStore):
    def __init__(self) -> None:
        self.profiles: dict[str, Profile] = {}

    async def get_profile(self, user_id: str) -> Profile | None:
        await _io()
        p = self.profiles.get(user_id)
        return p.model_copy() if p else None

    async def create_profile(self, profile: Profile) -> bool:
        await _io()
        if profile.user_id in self.profiles:
            return False
        if profile.referral_code and await self._code_taken(profile.referral_code):
            return False
        self.profiles[profile.user_id] = profile.model_copy()
        return True

    async def read_balance(self, user_id: str) -> int | None:
        await _io()
        p = self.profiles.get(user_id)
        return p.loyalty_points if p else None

    async def write_balance(self, user_id: str, balance: int, expected: int) -> bool:
        await _io()
        p = self.profiles.get(user_id)
        if p is None or p.loyalty_points != expected:
            return False
        p.loyalty_points = balance
        return True

    async def read_referral_code(self, user_id: str) -> str | None:
        await _io()
        p = self.profiles.get(user_id)
        return p.referral_code if p else None

    async def write_referral_code(self, user_id: str, code: str) -> bool:
        await _io()
        p = self.profiles.get(user_id)
        if p is None or p.referral_code or await self._code_taken(code):
            return False
        p.referral_code = code
        return True

    async def find_user_id_by_referral_code(self, code: str) -> str | None:
        await _io()
        for p in self.profiles.values():
            if p.referral_code == code:
                return p.user_id
        return None

    async def set_referred_by(self, user_id: str, referrer_id: str) -> None:
        await _io()
        p = self.profiles.get(user_id)
        if p is not None:
            p.referred_by = referrer_id

    async def iter_user_ids(self) -> AsyncIterator[str]:
        for user_id in list(self.profiles):
            yield user_id

    async def _code_taken(self, code: str) -> bool:
        return any(p.referral_code == code for p in self.profiles.values())


class MemoryLedgerStore(LedgerStore):
    def __init__(self) -> None:
        self.entries: list[PointTransaction] = []

    async def insert_entry(self, entry: PointTransaction) -> None:
        await _io()
        self.entries.append(entry)

    async def delete_entry(self, user_id: str, entry_id: str) -> None:
        await _io()
        self.entries = [e for e in self.entries if not (e.user_id == user_id and e.id == entry_id)]

    async def list_entries(self, user_id: str, limit: int = 50, offset: int = 0) -> list[PointTransaction]:
        await _io()
        own = [e for e in reversed(self.entries) if e.user_id == user_id]
        return own[offset:offset + limit]

    async def find_by_idempotency_key(self, user_id: str, key: str) -> PointTransaction | None:
        await _io()
        for e in self.entries:
            if e.user_id == user_id and e.idempotency_key == key:
                return e
        return None

    async def sum_amounts(self, user_id: str) -> tuple[int, int]:
        await _io()
        own = [e.amount for e in self.entries if e.user_id == user_id]
        return sum(own), len(own)


class MemoryWalletStore(WalletStore):
    def __init__(self, currency: str | None = None) -> None:
        self.currency = currency or get_settings().wallet_currency
        self.wallets: dict[str, Wallet] = {}

    async def get_wallet(self, user_id: str) -> Wallet | None:
        await _io()
        w = self.wallets.get(user_id)
        return w.model_copy() if w else None

    async def read_balance(self, user_id: str) -> Decimal:
        await _io()
        w = self.wallets.get(user_id)
        return w.balance if w else Decimal("0")

    async def adjust_balance(self, user_id: str, delta: Decimal) -> Decimal:
        await _io()
        w = self.wallets.get(user_id)
        current = w.balance if w else Decimal("0")
        if current + delta < 0:
            raise InsufficientWalletBalance(user_id, -delta)
        if w is None:
            w = self.wallets[user_id] = Wallet(user_id=user_id, currency=self.currency)
        w.balance = current + delta
        w.updated_at = datetime.utcnow()
        return w.balance


class MemoryReferralStore(ReferralStore):
    def __init__(self) -> None:
        self.referrals: dict[str, Referral] = {}

    async def insert_referral(self, referral: Referral) -> bool:
        await _io()
        if any(r.referred_id == referral.referred_id for r in self.referrals.values()):
            return False
        self.referrals[referral.id] = referral.model_copy()
        return True

    async def find_by_referred_id(self, user_id: str) -> Referral | None:
        await _io()
        for r in self.referrals.values():
            if r.referred_id == user_id:
                return r.model_copy()
        return None

    async def find_pending_by_referred_id(self, user_id: str) -> Referral | None:
        r = await self.find_by_referred_id(user_id)
        return r if r and r.status == ReferralStatus.PENDING else None

    async def update_status(
        self,
        referral_id: str,
        status: ReferralStatus,
        points_earned: int,
        expected_status: ReferralStatus | None = None,
        qualifying_event: str | None = None,
        rewarded_at: datetime | None = None,
    ) -> bool:
        await _io()
        r = self.referrals.get(referral_id)
        if r is None or (expected_status is not None and r.status != expected_status):
            return False
        r.status = status
        r.points_earned = points_earned
        r.qualifying_event = qualifying_event
        r.rewarded_at = rewarded_at
        return True

    async def list_by_referrer(self, referrer_id: str) -> list[Referral]:
        await _io()
        own = [r.model_copy() for r in self.referrals.values() if r.referrer_id == referrer_id]
        return sorted(own, key=lambda r: r.created_at, reverse=True)

    async def count_by_referrer(self, referrer_id: str) -> int:
        await _io()
        return sum(1 for r in self.referrals.values() if r.referrer_id == referrer_id)


class MemoryUserDirectory(UserDirectory):
    def __init__(self, profiles: MemoryProfileStore) -> None:
        self._profiles = profiles

    async def find_user_id_by_identifier(self, identifier: str) -> str | None:
        await _io()
        ident = identifier.strip()
        email = ident.lower()
        for p in self._profiles.profiles.values():
            if p.email == email:
                return p.user_id
        return ident if ident in self._profiles.profiles else None


class MemoryAuditStore(AuditStore):
    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    async def append(self, event: AuditEvent) -> None:
        await _io()
        self.events.append(event)


def build_memory_stores() -> Stores:
    profiles = MemoryProfileStore()
    return Stores(
        profiles=profiles,
        ledger=MemoryLedgerStore(),
        wallets=MemoryWalletStore(),
        referrals=MemoryReferralStore(),
        directory=MemoryUserDirectory(profiles),
        audit=MemoryAuditStore(),
    )
