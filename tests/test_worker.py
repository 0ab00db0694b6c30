"""ARQ jobs and the enqueue helper, without Redis."""

import pytest

from loyalty_ledger.core.exceptions import NotFoundError
from loyalty_ledger.worker import tasks

pytestmark = pytest.mark.asyncio


class FakePool:
    def __init__(self) -> None:
        self.jobs: list = []
        self.closed = False

    async def enqueue_job(self, function, *args, **kwargs):
        self.jobs.append((function, args, kwargs))

    async def close(self) -> None:
        self.closed = True


async def test_enqueue_shipment_completed_dedupes_by_shipment(monkeypatch):
    pool = FakePool()

    async def fake_create_pool(settings):
        return pool

    monkeypatch.setattr(tasks, "create_pool", fake_create_pool)
    await tasks.enqueue_shipment_completed("client", "shp-7", reward_points=12)
    assert pool.jobs == [
        ("shipment_completed", ("client", "shp-7", 12), {"_job_id": "shipment_completed:shp-7"}),
    ]
    assert pool.closed


async def test_shipment_completed_job(services, make_user):
    await make_user("client")
    out = await tasks.shipment_completed({"services": services}, "client", "shp-1", 20)
    assert out["points_awarded"] == 20
    assert await services.ledger.get_balance("client") == 20


async def test_failed_job_lands_in_audit_log(services, stores):
    ctx = {"services": services, "job_id": "job-1"}
    with pytest.raises(NotFoundError):
        await tasks.shipment_completed(ctx, "ghost", "shp-1", 5)
    failed = stores.audit.events[-1]
    assert failed.event_type == "job_failed"
    assert failed.entity_id == "job-1"
    assert failed.metadata["job_name"] == "shipment_completed"
    assert failed.metadata["args"] == ["ghost", "shp-1"]


async def test_reconcile_job(services, make_user):
    await make_user("u1", points=10)
    out = await tasks.reconcile_balances({"services": services})
    assert out == {"checked": 1, "drifted": []}
