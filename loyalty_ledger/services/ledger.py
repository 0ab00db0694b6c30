"""Points ledger and atomic balance updates.

Every change to a user's loyalty points goes through PointsLedger.append_entry,
which keeps Profile.loyalty_points equal to the sum of the user's ledger
entries and never lets it go below zero.
"""

import asyncio
import weakref
from typing import Any

from loyalty_ledger.core.audit import log_event
from loyalty_ledger.core.config import Settings, get_settings
from loyalty_ledger.core.exceptions import (
    ConcurrentUpdateError,
    InsufficientPoints,
    InvalidAmount,
    InvalidReason,
    LedgerIntegrityError,
    NotFoundError,
)
from loyalty_ledger.core.logging import get_logger
from loyalty_ledger.core.retry import retry_read
from loyalty_ledger.models import AppendResult, BalanceCheck, PointReason, PointTransaction
from loyalty_ledger.stores.base import AuditStore, LedgerStore, ProfileStore

log = get_logger(__name__)

# Shared by every PointsLedger in the process; entries go away once no task holds the lock.
_user_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def user_lock(user_id: str) -> asyncio.Lock:
    lock = _user_locks.get(user_id)
    if lock is None:
        lock = asyncio.Lock()
        _user_locks[user_id] = lock
    return lock


def _check_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
        raise InvalidAmount(details={"amount": repr(amount)})
    return amount


def _check_reason(reason: Any) -> PointReason:
    try:
        return PointReason(reason)
    except ValueError:
        raise InvalidReason(reason) from None


class PointsLedger:
    def __init__(
        self,
        profiles: ProfileStore,
        ledger: LedgerStore,
        audit: AuditStore,
        settings: Settings | None = None,
    ) -> None:
        self.profiles = profiles
        self.ledger = ledger
        self.audit = audit
        self.settings = settings or get_settings()

    async def get_balance(self, user_id: str) -> int:
        """Return cached balance for user (0 if no profile)."""
        balance = await retry_read("read_balance", self.profiles.read_balance, user_id)
        return balance or 0

    async def list_history(self, user_id: str, limit: int = 50, offset: int = 0) -> list[PointTransaction]:
        return await retry_read("list_entries", self.ledger.list_entries, user_id, limit, offset)

    async def append_entry(
        self,
        user_id: str,
        amount: int,
        reason: PointReason | str,
        metadata: dict[str, Any] | None = None,
        related_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> AppendResult:
        """
        Record a point movement and update the cached balance; both or neither.
        Debits that would take the balance below zero raise InsufficientPoints with no writes.
        Idempotency: if idempotency_key was already used for this user, return that entry and do not re-apply.
        """
        amount = _check_amount(amount)
        reason = _check_reason(reason)

        async with user_lock(user_id):
            if idempotency_key:
                existing = await retry_read(
                    "find_by_idempotency_key", self.ledger.find_by_idempotency_key, user_id, idempotency_key
                )
                if existing:
                    log.info("points_append_replayed", user_id=user_id, entry_id=existing.id, key=idempotency_key)
                    return AppendResult(entry=existing, balance=await self.get_balance(user_id), applied=False)

            entry, current = await self._commit(user_id, amount, reason, metadata, related_id, idempotency_key)

        log.info(
            "points_appended",
            user_id=user_id,
            entry_id=entry.id,
            amount=amount,
            reason=reason.value,
            balance_before=current,
            balance_after=entry.balance_after,
        )
        return AppendResult(entry=entry, balance=entry.balance_after)

    async def _commit(
        self,
        user_id: str,
        amount: int,
        reason: PointReason,
        metadata: dict[str, Any] | None,
        related_id: str | None,
        idempotency_key: str | None,
    ) -> tuple[PointTransaction, int]:
        """
        Insert the entry, then compare-and-set the cached balance; returns (entry, balance before).
        The balance only moves once its entry exists; a lost or failed balance write withdraws the entry.
        """
        attempts = self.settings.balance_cas_attempts
        for attempt in range(1, attempts + 1):
            current = await retry_read("read_balance", self.profiles.read_balance, user_id)
            if current is None:
                raise NotFoundError("User not found", code="USER_NOT_FOUND", details={"user_id": user_id})
            new_balance = current + amount
            if new_balance < 0:
                log.info("points_rejected", user_id=user_id, amount=amount, balance=current)
                raise InsufficientPoints(balance=current, requested=-amount)
            entry = PointTransaction(
                user_id=user_id,
                amount=amount,
                balance_after=new_balance,
                reason=reason,
                metadata=dict(metadata or {}),
                related_id=related_id,
                idempotency_key=idempotency_key,
            )
            await self.ledger.insert_entry(entry)
            try:
                moved = await self.profiles.write_balance(user_id, new_balance, expected=current)
            except BaseException:
                log.warning("balance_write_failed", user_id=user_id, entry_id=entry.id)
                await self._withdraw_entry(entry)
                raise
            if moved:
                return entry, current
            # Another process moved the balance between our read and write.
            await self._withdraw_entry(entry)
            log.warning("balance_cas_conflict", user_id=user_id, attempt=attempt)
        raise ConcurrentUpdateError(user_id, attempts)

    async def _withdraw_entry(self, entry: PointTransaction) -> None:
        """Delete an entry whose balance write never landed."""
        try:
            await self.ledger.delete_entry(entry.user_id, entry.id)
        except Exception as e:
            await self._report_drift(entry.user_id, {"entry_id": entry.id, "amount": entry.amount, "error": str(e)})
            raise LedgerIntegrityError(entry.user_id, {"entry_id": entry.id}) from e

    async def compensate(self, entry: PointTransaction, cause: str) -> AppendResult:
        """Append the equal-and-opposite entry for a step whose follow-up failed."""
        try:
            result = await self.append_entry(
                entry.user_id,
                -entry.amount,
                entry.reason,
                metadata={**entry.metadata, "reversal_of": entry.id, "cause": cause},
                related_id=entry.related_id,
                idempotency_key=f"reversal:{entry.id}",
            )
        except Exception as e:
            log.critical("compensation_failed", user_id=entry.user_id, entry_id=entry.id, cause=cause, error=str(e))
            await log_event(
                self.audit, entry.user_id, "compensation_failed", "point_transaction", entry.id,
                {"amount": entry.amount, "cause": cause, "error": str(e)},
            )
            raise LedgerIntegrityError(entry.user_id, {"entry_id": entry.id, "cause": cause}) from e
        if not result.applied:
            return result
        log.warning("compensation_applied", user_id=entry.user_id, entry_id=entry.id, reversal_id=result.entry.id, cause=cause)
        await log_event(
            self.audit, entry.user_id, "compensation_applied", "point_transaction", entry.id,
            {"reversal_id": result.entry.id, "amount": -entry.amount, "cause": cause},
        )
        return result

    async def verify_balance(self, user_id: str) -> BalanceCheck:
        """Compare cached balance with the ledger sum. Drift is reported, never corrected here."""
        async with user_lock(user_id):
            cached = await self.get_balance(user_id)
            total, count = await retry_read("sum_amounts", self.ledger.sum_amounts, user_id)
        check = BalanceCheck(user_id=user_id, cached_balance=cached, ledger_sum=total, entry_count=count)
        if not check.consistent:
            await self._report_drift(user_id, {"cached_balance": cached, "ledger_sum": total, "entry_count": count})
        return check

    async def _report_drift(self, user_id: str, details: dict[str, Any]) -> None:
        log.critical("ledger_drift", user_id=user_id, **details)
        await log_event(self.audit, user_id, "ledger_drift", "profile", user_id, details)
