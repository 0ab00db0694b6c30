"""MongoDB stores on beanie documents. Balances use conditional single-document updates."""

from datetime import datetime
from decimal import Decimal
from functools import wraps
from typing import AsyncIterator

from bson import Decimal128
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from loyalty_ledger.core.config import get_settings
from loyalty_ledger.core.exceptions import InsufficientWalletBalance
from loyalty_ledger.db.documents import (
    AuditLogDocument,
    PointTransactionDocument,
    ProfileDocument,
    ReferralDocument,
    WalletDocument,
)
from loyalty_ledger.models import AuditEvent, PointTransaction, Profile, Referral, ReferralStatus, Wallet
from loyalty_ledger.stores.base import (
    AuditStore,
    LedgerStore,
    ProfileStore,
    ReferralStore,
    StoreError,
    Stores,
    UserDirectory,
    WalletStore,
)


def _store_errors(fn):
    """Surface driver failures as StoreError so callers decide about retries."""
    @wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except DuplicateKeyError:
            raise
        except PyMongoError as e:
            raise StoreError(f"{fn.__qualname__}: {e}") from e
    return wrapper


def _profile(doc: ProfileDocument) -> Profile:
    return Profile.model_validate(doc.model_dump(exclude={"id", "revision_id"}))


def _entry(doc: PointTransactionDocument) -> PointTransaction:
    return PointTransaction.model_validate(doc.model_dump(exclude={"revision_id"}))


def _referral(doc: ReferralDocument) -> Referral:
    return Referral.model_validate(doc.model_dump(exclude={"revision_id"}))


class MongoProfileStore(ProfileStore):
    @_store_errors
    async def get_profile(self, user_id: str) -> Profile | None:
        doc = await ProfileDocument.find_one(ProfileDocument.user_id == user_id)
        return _profile(doc) if doc else None

    @_store_errors
    async def create_profile(self, profile: Profile) -> bool:
        try:
            await ProfileDocument(**profile.model_dump()).insert()
        except DuplicateKeyError:
            return False
        return True

    @_store_errors
    async def read_balance(self, user_id: str) -> int | None:
        doc = await ProfileDocument.get_motor_collection().find_one(
            {"user_id": user_id}, {"loyalty_points": 1}
        )
        return int(doc.get("loyalty_points", 0)) if doc else None

    @_store_errors
    async def write_balance(self, user_id: str, balance: int, expected: int) -> bool:
        result = await ProfileDocument.get_motor_collection().update_one(
            {"user_id": user_id, "loyalty_points": expected},
            {"$set": {"loyalty_points": balance}},
        )
        return result.modified_count == 1

    @_store_errors
    async def read_referral_code(self, user_id: str) -> str | None:
        doc = await ProfileDocument.get_motor_collection().find_one(
            {"user_id": user_id}, {"referral_code": 1}
        )
        return doc.get("referral_code") if doc else None

    @_store_errors
    async def write_referral_code(self, user_id: str, code: str) -> bool:
        try:
            result = await ProfileDocument.get_motor_collection().update_one(
                {"user_id": user_id, "referral_code": None},
                {"$set": {"referral_code": code}},
            )
        except DuplicateKeyError:
            return False
        return result.modified_count == 1

    @_store_errors
    async def find_user_id_by_referral_code(self, code: str) -> str | None:
        doc = await ProfileDocument.find_one(ProfileDocument.referral_code == code)
        return doc.user_id if doc else None

    @_store_errors
    async def set_referred_by(self, user_id: str, referrer_id: str) -> None:
        await ProfileDocument.get_motor_collection().update_one(
            {"user_id": user_id},
            {"$set": {"referred_by": referrer_id}},
        )

    async def iter_user_ids(self) -> AsyncIterator[str]:
        cursor = ProfileDocument.get_motor_collection().find({}, {"user_id": 1})
        async for doc in cursor:
            yield doc["user_id"]


class MongoLedgerStore(LedgerStore):
    @_store_errors
    async def insert_entry(self, entry: PointTransaction) -> None:
        await PointTransactionDocument(**entry.model_dump()).insert()

    @_store_errors
    async def delete_entry(self, user_id: str, entry_id: str) -> None:
        await PointTransactionDocument.get_motor_collection().delete_one({"_id": entry_id, "user_id": user_id})

    @_store_errors
    async def list_entries(self, user_id: str, limit: int = 50, offset: int = 0) -> list[PointTransaction]:
        docs = (
            await PointTransactionDocument.find(PointTransactionDocument.user_id == user_id)
            .sort(-PointTransactionDocument.created_at)
            .skip(offset)
            .limit(limit)
            .to_list()
        )
        return [_entry(d) for d in docs]

    @_store_errors
    async def find_by_idempotency_key(self, user_id: str, key: str) -> PointTransaction | None:
        doc = await PointTransactionDocument.find_one(
            PointTransactionDocument.user_id == user_id,
            PointTransactionDocument.idempotency_key == key,
        )
        return _entry(doc) if doc else None

    @_store_errors
    async def sum_amounts(self, user_id: str) -> tuple[int, int]:
        rows = await PointTransactionDocument.get_motor_collection().aggregate([
            {"$match": {"user_id": user_id}},
            {"$group": {"_id": None, "total": {"$sum": "$amount"}, "count": {"$sum": 1}}},
        ]).to_list(length=1)
        if not rows:
            return 0, 0
        return int(rows[0]["total"]), int(rows[0]["count"])


class MongoWalletStore(WalletStore):
    def __init__(self, currency: str | None = None) -> None:
        self.currency = currency or get_settings().wallet_currency

    @_store_errors
    async def get_wallet(self, user_id: str) -> Wallet | None:
        doc = await WalletDocument.find_one(WalletDocument.user_id == user_id)
        if not doc:
            return None
        return Wallet(user_id=doc.user_id, balance=doc.balance, currency=doc.currency, updated_at=doc.updated_at)

    async def read_balance(self, user_id: str) -> Decimal:
        wallet = await self.get_wallet(user_id)
        return wallet.balance if wallet else Decimal("0")

    @_store_errors
    async def adjust_balance(self, user_id: str, delta: Decimal) -> Decimal:
        query: dict = {"user_id": user_id}
        if delta < 0:
            query["balance"] = {"$gte": Decimal128(str(-delta))}
        doc = await WalletDocument.get_motor_collection().find_one_and_update(
            query,
            {
                "$inc": {"balance": Decimal128(str(delta))},
                "$set": {"updated_at": datetime.utcnow()},
                "$setOnInsert": {"currency": self.currency},
            },
            upsert=delta >= 0,
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise InsufficientWalletBalance(user_id, -delta)
        return doc["balance"].to_decimal()


class MongoReferralStore(ReferralStore):
    @_store_errors
    async def insert_referral(self, referral: Referral) -> bool:
        try:
            await ReferralDocument(**referral.model_dump()).insert()
        except DuplicateKeyError:
            return False
        return True

    @_store_errors
    async def find_by_referred_id(self, user_id: str) -> Referral | None:
        doc = await ReferralDocument.find_one(ReferralDocument.referred_id == user_id)
        return _referral(doc) if doc else None

    @_store_errors
    async def find_pending_by_referred_id(self, user_id: str) -> Referral | None:
        doc = await ReferralDocument.find_one(
            ReferralDocument.referred_id == user_id,
            ReferralDocument.status == ReferralStatus.PENDING,
        )
        return _referral(doc) if doc else None

    @_store_errors
    async def update_status(
        self,
        referral_id: str,
        status: ReferralStatus,
        points_earned: int,
        expected_status: ReferralStatus | None = None,
        qualifying_event: str | None = None,
        rewarded_at: datetime | None = None,
    ) -> bool:
        query: dict = {"_id": referral_id}
        if expected_status is not None:
            query["status"] = expected_status.value
        result = await ReferralDocument.get_motor_collection().update_one(
            query,
            {"$set": {
                "status": status.value,
                "points_earned": points_earned,
                "qualifying_event": qualifying_event,
                "rewarded_at": rewarded_at,
            }},
        )
        return result.matched_count == 1

    @_store_errors
    async def list_by_referrer(self, referrer_id: str) -> list[Referral]:
        docs = (
            await ReferralDocument.find(ReferralDocument.referrer_id == referrer_id)
            .sort(-ReferralDocument.created_at)
            .to_list()
        )
        return [_referral(d) for d in docs]

    @_store_errors
    async def count_by_referrer(self, referrer_id: str) -> int:
        return await ReferralDocument.find(ReferralDocument.referrer_id == referrer_id).count()


class MongoUserDirectory(UserDirectory):
    @_store_errors
    async def find_user_id_by_identifier(self, identifier: str) -> str | None:
        ident = identifier.strip()
        doc = await ProfileDocument.find_one(ProfileDocument.email == ident.lower())
        if doc is None:
            doc = await ProfileDocument.find_one(ProfileDocument.user_id == ident)
        return doc.user_id if doc else None


class MongoAuditStore(AuditStore):
    @_store_errors
    async def append(self, event: AuditEvent) -> None:
        await AuditLogDocument(**event.model_dump()).insert()


def build_mongo_stores() -> Stores:
    return Stores(
        profiles=MongoProfileStore(),
        ledger=MongoLedgerStore(),
        wallets=MongoWalletStore(),
        referrals=MongoReferralStore(),
        directory=MongoUserDirectory(),
        audit=MongoAuditStore(),
    )
