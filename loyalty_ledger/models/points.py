from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def new_id() -> str:
    return uuid4().hex


class PointReason(str, Enum):
    SHIPMENT_REWARD = "shipment_reward"
    REFERRAL_BONUS = "referral_bonus"
    WALLET_CONVERSION = "wallet_conversion"
    TRANSFER_SENT = "transfer_sent"
    TRANSFER_RECEIVED = "transfer_received"
    OTHER = "other"


class PointTransaction(BaseModel):
    """Ledger entry. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    user_id: str
    amount: int  # positive = credit, negative = debit
    balance_after: int
    reason: PointReason
    metadata: dict[str, Any] = Field(default_factory=dict)
    related_id: str | None = None  # shipment, referral or transfer id
    idempotency_key: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class AppendResult(BaseModel):
    entry: PointTransaction
    balance: int
    applied: bool = True  # False when an idempotency key replayed an existing entry


class BalanceCheck(BaseModel):
    user_id: str
    cached_balance: int
    ledger_sum: int
    entry_count: int

    @property
    def consistent(self) -> bool:
        return self.cached_balance == self.ledger_sum


class ConversionResult(BaseModel):
    entry: PointTransaction
    points_converted: int
    conversion_rate: Decimal
    wallet_credit: Decimal
    points_balance: int
    wallet_balance: Decimal


class TransferResult(BaseModel):
    transfer_id: str
    amount: int
    recipient_id: str
    sent: PointTransaction
    received: PointTransaction
    sender_balance: int
    recipient_balance: int
