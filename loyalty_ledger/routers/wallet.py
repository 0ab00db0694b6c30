from fastapi import APIRouter, Depends

from loyalty_ledger.deps import get_current_user, get_services
from loyalty_ledger.models import Profile
from loyalty_ledger.services.container import LoyaltyServices

router = APIRouter()


@router.get("")
async def wallet_summary(
    user: Profile = Depends(get_current_user),
    services: LoyaltyServices = Depends(get_services),
):
    """Wallet balance with the current point value used for conversions."""
    summary = await services.conversions.wallet_summary(user.user_id)
    return {
        "balance": str(summary.balance),
        "currency": summary.currency,
        "point_value": summary.point_value,
        "min_conversion_points": summary.min_conversion_points,
    }
