"""Store-scoped data deletion for uninstall and privacy redaction hooks."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy import delete
from sqlalchemy.orm import Session

from shared.models import GenerationRequest, ProductSetting, UsageLedger, utcnow
from shared.storage import ObjectStorage, sanitize_segment

from .cache import ResultCache
from .ledger import UsageLedgerService
from .records import delete_requests

logger = logging.getLogger(__name__)


def purge_store(
    session: Session,
    store: str,
    storage: Optional[ObjectStorage] = None,
    *,
    keep_ledger: bool = False,
) -> Dict[str, int]:
    """Delete every row (and optionally every stored result) owned by ``store``.

    With ``keep_ledger`` the usage ledger survives, so a reinstall cannot
    start over with a fresh allowance.
    """

    breakdown = {
        "requests": delete_requests(session, GenerationRequest.store == store),
        "cached_results": ResultCache(session).purge_store(store),
    }
    tables = [("product_settings", ProductSetting)]
    if not keep_ledger:
        tables.insert(0, ("ledger", UsageLedger))
    for label, model in tables:
        result = session.execute(
            delete(model)
            .where(model.store == store)
            .execution_options(synchronize_session="fetch")
        )
        breakdown[label] = result.rowcount or 0
    session.commit()

    if storage is not None:
        breakdown["stored_objects"] = storage.delete_prefix(f"{sanitize_segment(store)}/")

    breakdown["total"] = sum(breakdown.values())
    logger.info("Purged store %s: %s", store, breakdown)
    return breakdown


def uninstall_store(
    session: Session, store: str, storage: Optional[ObjectStorage] = None
) -> Dict[str, int]:
    """Drop the store's data on uninstall but keep its ledger, deactivated."""

    breakdown = purge_store(session, store, storage, keep_ledger=True)
    UsageLedgerService(session).deactivate(store)
    return breakdown


def redact_customer_requests(
    session: Session,
    store: str,
    older_than_hours: int = 48,
    now: Optional[datetime] = None,
) -> int:
    """Drop the store's requests older than the cutoff.

    Requests carry no shopper identity, so redaction removes everything past
    the cutoff for the store rather than a single customer's rows.
    """

    cutoff = (now or utcnow()) - timedelta(hours=older_than_hours)
    removed = delete_requests(
        session,
        GenerationRequest.store == store,
        GenerationRequest.created_at <= cutoff,
    )
    logger.info("Redacted %s requests for %s older than %sh", removed, store, older_than_hours)
    return removed
