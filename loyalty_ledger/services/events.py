"""Business events that earn points. Delivered at least once, so every handler is idempotent."""

from typing import Any

from loyalty_ledger.core.logging import get_logger
from loyalty_ledger.models import PointReason
from loyalty_ledger.services.container import LoyaltyServices

log = get_logger(__name__)


async def handle_shipment_completed(
    services: LoyaltyServices,
    user_id: str,
    shipment_id: str,
    reward_points: int | None = None,
) -> dict[str, Any]:
    """
    Credit the shipment reward to the client, then qualify the client's referral (first shipment).
    Replays of the same shipment do not credit twice.
    """
    points = services.ledger.settings.shipment_reward_points if reward_points is None else reward_points
    reward = None
    if points > 0:
        reward = await services.ledger.append_entry(
            user_id,
            points,
            PointReason.SHIPMENT_REWARD,
            metadata={"shipment_id": shipment_id},
            related_id=shipment_id,
            idempotency_key=f"shipment_reward:{shipment_id}",
        )
    referral = await services.referrals.qualify(user_id, f"first_shipment:{shipment_id}")
    log.info(
        "shipment_completed_handled",
        user_id=user_id,
        shipment_id=shipment_id,
        reward_applied=bool(reward and reward.applied),
        referral_rewarded=referral is not None,
    )
    return {
        "shipment_id": shipment_id,
        "points_awarded": points if reward and reward.applied else 0,
        "balance": reward.balance if reward else await services.ledger.get_balance(user_id),
        "referral_id": referral.id if referral else None,
    }
