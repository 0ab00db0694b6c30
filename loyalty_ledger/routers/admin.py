from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from loyalty_ledger.deps import get_services, require_admin
from loyalty_ledger.models import Profile
from loyalty_ledger.services import admin as admin_service
from loyalty_ledger.services import events as events_service
from loyalty_ledger.services.container import LoyaltyServices

router = APIRouter()


class AdjustPointsRequest(BaseModel):
    user_id: str
    amount: int
    note: str = Field(min_length=1)


class ShipmentCompletedRequest(BaseModel):
    user_id: str
    shipment_id: str
    reward_points: int | None = Field(default=None, ge=0)


class EnrollUserRequest(BaseModel):
    user_id: str
    full_name: str = ""
    email: str | None = None
    role: str = "client"
    referral_code_used: str | None = None


@router.post("/users")
async def admin_enroll_user(
    body: EnrollUserRequest,
    admin: Profile = Depends(require_admin),
    services: LoyaltyServices = Depends(get_services),
):
    """Signup hook: create the loyalty profile, assign a referral code, link the referrer."""
    profile = await services.referrals.enroll_user(
        Profile(user_id=body.user_id, full_name=body.full_name, email=body.email, role=body.role),
        referral_code_used=body.referral_code_used,
    )
    return {"user_id": profile.user_id, "referral_code": profile.referral_code, "referred_by": profile.referred_by}


@router.post("/points/adjust")
async def admin_adjust_points(
    body: AdjustPointsRequest,
    admin: Profile = Depends(require_admin),
    services: LoyaltyServices = Depends(get_services),
):
    """Admin: credit or debit a user's points with a note."""
    result = await admin_service.adjust_points(services, admin.user_id, body.user_id, body.amount, body.note)
    return {"entry_id": result.entry.id, "balance": result.balance}


@router.get("/points/{user_id}/verify")
async def admin_verify_points(
    user_id: str,
    admin: Profile = Depends(require_admin),
    services: LoyaltyServices = Depends(get_services),
):
    """Admin: compare cached balance with the ledger sum."""
    check = await services.ledger.verify_balance(user_id)
    return {**check.model_dump(), "consistent": check.consistent}


@router.post("/events/shipment-completed")
async def admin_shipment_completed(
    body: ShipmentCompletedRequest,
    admin: Profile = Depends(require_admin),
    services: LoyaltyServices = Depends(get_services),
):
    """Shipment delivered: shipment reward plus referral qualification. Safe to replay."""
    return await events_service.handle_shipment_completed(
        services, body.user_id, body.shipment_id, body.reward_points
    )
