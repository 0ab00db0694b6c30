from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from loyalty_ledger.deps import get_current_user, get_services
from loyalty_ledger.models import PointTransaction, Profile
from loyalty_ledger.services.container import LoyaltyServices

router = APIRouter()


class ConvertRequest(BaseModel):
    points: int = Field(gt=0)


class TransferRequest(BaseModel):
    recipient: str = Field(min_length=1, description="Recipient email")
    amount: int = Field(gt=0)


def _entry_out(e: PointTransaction) -> dict:
    return {
        "id": e.id,
        "amount": e.amount,
        "balance_after": e.balance_after,
        "reason": e.reason.value,
        "metadata": e.metadata,
        "related_id": e.related_id,
        "created_at": e.created_at.isoformat(),
    }


@router.get("/balance")
async def points_balance(
    user: Profile = Depends(get_current_user),
    services: LoyaltyServices = Depends(get_services),
):
    """Return current points balance."""
    return {"balance": await services.ledger.get_balance(user.user_id)}


@router.get("/history")
async def points_history(
    user: Profile = Depends(get_current_user),
    services: LoyaltyServices = Depends(get_services),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Return ledger entries for current user (newest first)."""
    entries = await services.ledger.list_history(user.user_id, limit, offset)
    return {"entries": [_entry_out(e) for e in entries], "limit": limit, "offset": offset}


@router.post("/convert")
async def points_convert(
    body: ConvertRequest,
    user: Profile = Depends(get_current_user),
    services: LoyaltyServices = Depends(get_services),
):
    """Convert points to wallet credit at the current point value."""
    result = await services.conversions.convert_to_wallet(user.user_id, body.points)
    return {
        "points_converted": result.points_converted,
        "conversion_rate": str(result.conversion_rate),
        "wallet_credit": str(result.wallet_credit),
        "points_balance": result.points_balance,
        "wallet_balance": str(result.wallet_balance),
        "entry": _entry_out(result.entry),
    }


@router.post("/transfer")
async def points_transfer(
    body: TransferRequest,
    user: Profile = Depends(get_current_user),
    services: LoyaltyServices = Depends(get_services),
):
    """Send points to another user by email."""
    result = await services.conversions.transfer_points(user.user_id, body.recipient, body.amount)
    return {
        "transfer_id": result.transfer_id,
        "amount": result.amount,
        "points_balance": result.sender_balance,
        "entry": _entry_out(result.sent),
    }
