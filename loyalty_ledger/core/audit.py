"""Audit log for critical actions."""

from typing import Any

from loyalty_ledger.core.logging import get_logger
from loyalty_ledger.models import AuditEvent
from loyalty_ledger.stores.base import AuditStore, StoreError

log = get_logger(__name__)


async def log_event(
    store: AuditStore,
    user_id: str | None,
    event_type: str,
    entity_type: str,
    entity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Append to the audit store. A failed audit write is logged; the audited action already happened."""
    event = AuditEvent(
        user_id=user_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        metadata=metadata or {},
    )
    try:
        await store.append(event)
    except StoreError:
        log.exception("audit_write_failed", event_type=event_type, entity_type=entity_type, entity_id=entity_id)
