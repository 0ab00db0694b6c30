from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from loyalty_ledger.models.points import new_id


class ReferralStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    REWARDED = "rewarded"


class Referral(BaseModel):
    id: str = Field(default_factory=new_id)
    referrer_id: str
    referred_id: str
    status: ReferralStatus = ReferralStatus.PENDING
    points_earned: int = 0
    qualifying_event: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    rewarded_at: datetime | None = None


class ReferralStats(BaseModel):
    total: int
    pending: int
    completed: int  # completed or rewarded
    total_points: int
