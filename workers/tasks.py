"""Celery tasks for request retention and store data purges."""
from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional

from celery import shared_task
from celery.utils.log import get_task_logger

from shared.config import get_settings
from shared.db import get_sync_session
from shared.storage import get_storage
from tryon import compliance, records
from tryon.ledger import UsageLedgerService
from tryon.presets import PresetCatalog

logger = get_task_logger(__name__)


@shared_task(name="maintenance.cleanup_old_requests")
def cleanup_old_requests(days_old: Optional[int] = None) -> int:
    """Delete terminal requests past the retention window."""

    days = days_old if days_old is not None else get_settings().request_retention_days
    with get_sync_session() as session:
        removed = records.cleanup_old_requests(session, days_old=days)
    logger.info("Retention sweep removed %s requests older than %s days", removed, days)
    return removed


@shared_task(name="maintenance.purge_store")
def purge_store_data(store: str, include_objects: bool = True) -> Dict[str, int]:
    storage = get_storage() if include_objects else None
    with get_sync_session() as session:
        breakdown = compliance.purge_store(session, store, storage)
    logger.info("Purged data for %s: %s", store, breakdown)
    return breakdown


@shared_task(name="maintenance.redact_customer_requests")
def redact_customer_requests(store: str, older_than_hours: int = 48) -> int:
    with get_sync_session() as session:
        return compliance.redact_customer_requests(
            session, store, older_than_hours=older_than_hours
        )


@shared_task(name="maintenance.seed_presets")
def seed_presets(directory: str, url_prefix: str) -> int:
    with get_sync_session() as session:
        seeded = PresetCatalog(session).seed_from_directory(Path(directory), url_prefix)
    return len(seeded)


@shared_task(name="maintenance.set_custom_limits")
def set_custom_limits(store: str, credits_limit: int, product_limit: int) -> Dict[str, object]:
    """Grant a store hand-negotiated limits; ``-1`` means unlimited."""

    with get_sync_session() as session:
        ledger = UsageLedgerService.from_settings(session, get_settings())
        ledger.set_limits(store, credits_limit, product_limit)
        usage = ledger.snapshot(store)
    logger.info("Custom limits for %s: %s credits, %s products", store, credits_limit, product_limit)
    return usage


@shared_task(name="maintenance.clear_custom_limits")
def clear_custom_limits(store: str) -> Dict[str, object]:
    with get_sync_session() as session:
        ledger = UsageLedgerService.from_settings(session, get_settings())
        ledger.clear_custom_limits(store)
        return ledger.snapshot(store)
