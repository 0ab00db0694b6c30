from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any

from beanie import Document, Indexed
from bson import Decimal128
from pydantic import BeforeValidator, Field
from pymongo import ASCENDING, DESCENDING, IndexModel

from loyalty_ledger.models import PointReason, ReferralStatus, new_id


def _to_decimal(v: Any) -> Any:
    return v.to_decimal() if isinstance(v, Decimal128) else v


MongoDecimal = Annotated[Decimal, BeforeValidator(_to_decimal)]


class ProfileDocument(Document):
    user_id: Indexed(str, unique=True)
    full_name: str = ""
    email: str | None = None
    role: str = "client"
    loyalty_points: int = 0
    referral_code: str | None = None
    referred_by: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "profiles"
        indexes = [
            IndexModel([("email", ASCENDING)]),
            IndexModel(
                [("referral_code", ASCENDING)],
                unique=True,
                partialFilterExpression={"referral_code": {"$type": "string"}},
                name="referral_code_unique",
            ),
        ]


class PointTransactionDocument(Document):
    """Ledger row; inserted once, never updated."""
    id: str = Field(default_factory=new_id)
    user_id: str
    amount: int
    balance_after: int
    reason: PointReason
    metadata: dict[str, Any] = Field(default_factory=dict)
    related_id: str | None = None
    idempotency_key: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "point_history"
        indexes = [
            IndexModel([("user_id", ASCENDING), ("created_at", DESCENDING)]),
            IndexModel(
                [("user_id", ASCENDING), ("idempotency_key", ASCENDING)],
                unique=True,
                partialFilterExpression={"idempotency_key": {"$type": "string"}},
                name="user_idempotency_key_unique",
            ),
            IndexModel([("related_id", ASCENDING)]),
        ]


class WalletDocument(Document):
    user_id: Indexed(str, unique=True)
    balance: MongoDecimal = Decimal("0")
    currency: str = "XOF"
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "wallets"


class ReferralDocument(Document):
    id: str = Field(default_factory=new_id)
    referrer_id: Indexed(str)
    referred_id: Indexed(str, unique=True)
    status: ReferralStatus = ReferralStatus.PENDING
    points_earned: int = 0
    qualifying_event: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    rewarded_at: datetime | None = None

    class Settings:
        name = "referrals"


class AuditLogDocument(Document):
    user_id: str | None = None
    event_type: str
    entity_type: str
    entity_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "audit_logs"
        indexes = [
            [("user_id", 1), ("created_at", -1)],
            [("entity_type", 1), ("entity_id", 1)],
        ]
