"""ARQ job definitions. enqueue_shipment_completed is the entry point for the shipment service."""

import uuid
from typing import Any

from arq import create_pool
from arq.connections import RedisSettings

from loyalty_ledger.core.config import get_settings
from loyalty_ledger.core.logging import get_logger
from loyalty_ledger.services import admin as admin_service
from loyalty_ledger.services import events as events_service
from loyalty_ledger.services.container import LoyaltyServices, build_services
from loyalty_ledger.stores.base import get_stores

log = get_logger(__name__)


def _services(ctx: dict[str, Any]) -> LoyaltyServices:
    services = ctx.get("services")
    if services is None:
        services = ctx["services"] = build_services(get_stores())
    return services


async def _run_with_dlq(
    ctx: dict[str, Any],
    job_name: str,
    args: list[Any],
    kwargs: dict[str, Any],
    coro,
) -> Any:
    """Run coroutine; on exception record it in the audit log as a failed job, then re-raise."""
    job_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None
    try:
        return await coro
    except Exception as e:
        from loyalty_ledger.core.audit import log_event
        fid = job_id or str(uuid.uuid4())
        await log_event(
            _services(ctx).stores.audit, None, "job_failed", "job", fid,
            {"job_name": job_name, "args": args, "kwargs": kwargs, "reason": str(e)[:2000]},
        )
        log.exception("job_failed", job=job_name, job_id=fid, reason=str(e))
        raise


async def shipment_completed(
    ctx: dict[str, Any],
    user_id: str,
    shipment_id: str,
    reward_points: int | None = None,
) -> dict[str, Any]:
    """Shipment delivered: reward points and qualify the user's referral. Redelivery is harmless."""
    log.info("job_start", job="shipment_completed", user_id=user_id, shipment_id=shipment_id)
    out = await _run_with_dlq(
        ctx,
        "shipment_completed",
        [user_id, shipment_id],
        {"reward_points": reward_points},
        events_service.handle_shipment_completed(_services(ctx), user_id, shipment_id, reward_points),
    )
    log.info("job_done", job="shipment_completed", user_id=user_id, shipment_id=shipment_id)
    return out


async def reconcile_balances(ctx: dict[str, Any]) -> dict[str, Any]:
    """Cron job: verify every cached balance against its ledger."""
    return await _run_with_dlq(
        ctx, "reconcile_balances", [], {}, admin_service.reconcile_balances(_services(ctx))
    )


async def startup(ctx: dict) -> None:
    if get_settings().store_backend == "mongo":
        from loyalty_ledger.db.init import init_db
        await init_db()
    ctx["services"] = build_services(get_stores())


async def shutdown(ctx: dict) -> None:
    pass


def get_redis_settings() -> RedisSettings:
    from urllib.parse import urlparse
    s = get_settings()
    u = urlparse(s.redis_url)
    return RedisSettings(
        host=u.hostname or "localhost",
        port=u.port or 6379,
        password=u.password,
        database=int(u.path.lstrip("/")) if u.path else 0,
    )


async def enqueue_shipment_completed(user_id: str, shipment_id: str, reward_points: int | None = None) -> None:
    """Enqueue shipment_completed job (call from the shipment service)."""
    redis = await create_pool(get_redis_settings())
    try:
        # Job id per shipment so a duplicate enqueue while queued is dropped by arq.
        await redis.enqueue_job(
            "shipment_completed", user_id, shipment_id, reward_points, _job_id=f"shipment_completed:{shipment_id}"
        )
    finally:
        await redis.close()
