"""Run ARQ worker. Usage: python -m loyalty_ledger.worker.run_worker"""

from arq import run_worker
from arq.cron import cron

from loyalty_ledger.core.config import get_settings
from loyalty_ledger.core.logging import configure_logging
from loyalty_ledger.worker.tasks import (
    get_redis_settings,
    reconcile_balances,
    shipment_completed,
    shutdown,
    startup,
)


class WorkerSettings:
    redis_settings = get_redis_settings()
    functions = [shipment_completed]
    cron_jobs = [
        cron(reconcile_balances, hour=3, minute=0),  # daily at 03:00
    ]
    on_startup = startup
    on_shutdown = shutdown


def main() -> None:
    configure_logging(debug=get_settings().debug)
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
