from fastapi import APIRouter, Depends

from loyalty_ledger.deps import get_current_user, get_services
from loyalty_ledger.models import Profile
from loyalty_ledger.services.container import LoyaltyServices

router = APIRouter()


@router.get("/me")
async def referral_me(
    user: Profile = Depends(get_current_user),
    services: LoyaltyServices = Depends(get_services),
):
    """Get or create my referral code."""
    code = await services.referrals.resolve_code_or_generate(user.user_id, user.full_name)
    return {"referral_code": code}


@router.get("/stats")
async def referral_stats(
    user: Profile = Depends(get_current_user),
    services: LoyaltyServices = Depends(get_services),
):
    """Referral stats: total, pending, completed, total_points."""
    stats = await services.referrals.referral_stats(user.user_id)
    return stats.model_dump()


@router.get("")
async def referral_list(
    user: Profile = Depends(get_current_user),
    services: LoyaltyServices = Depends(get_services),
):
    """Users I referred, newest first."""
    refs = await services.referrals.list_referrals(user.user_id)
    return {
        "referrals": [
            {
                "id": r.id,
                "referred_id": r.referred_id,
                "status": r.status.value,
                "points_earned": r.points_earned,
                "created_at": r.created_at.isoformat(),
            }
            for r in refs
        ]
    }
