"""Admin tools: manual point adjustments and ledger reconciliation."""

from loyalty_ledger.core.audit import log_event
from loyalty_ledger.core.exceptions import BadRequestError
from loyalty_ledger.core.logging import get_logger
from loyalty_ledger.models import AppendResult, BalanceCheck, PointReason
from loyalty_ledger.services.container import LoyaltyServices

log = get_logger(__name__)


async def adjust_points(
    services: LoyaltyServices,
    admin_id: str,
    user_id: str,
    amount: int,
    note: str,
) -> AppendResult:
    """Credit or debit a user by hand. Debits still cannot overdraw."""
    note = (note or "").strip()
    if not note:
        raise BadRequestError("A note is required for manual adjustments")
    result = await services.ledger.append_entry(
        user_id,
        amount,
        PointReason.OTHER,
        metadata={"source": "admin_adjustment", "note": f"[Admin] {note}", "admin_id": admin_id},
    )
    await log_event(
        services.stores.audit, admin_id, "points_adjusted", "point_transaction", result.entry.id,
        {"user_id": user_id, "amount": amount, "note": note},
    )
    return result


async def reconcile_balances(services: LoyaltyServices) -> dict:
    """Verify every profile's cached balance against its ledger. Drift is reported, not fixed."""
    checked = 0
    drifted: list[BalanceCheck] = []
    async for user_id in services.stores.profiles.iter_user_ids():
        check = await services.ledger.verify_balance(user_id)
        checked += 1
        if not check.consistent:
            drifted.append(check)
    log.info("reconcile_balances_done", checked=checked, drifted=len(drifted))
    return {"checked": checked, "drifted": [c.user_id for c in drifted]}
