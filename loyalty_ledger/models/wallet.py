from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field


class Wallet(BaseModel):
    user_id: str
    balance: Decimal = Decimal("0")
    currency: str = "XOF"
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class WalletSummary(BaseModel):
    user_id: str
    balance: Decimal
    currency: str
    point_value: int
    min_conversion_points: int
