"""Persistence helpers for :class:`GenerationRequest` rows."""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from shared.models import (
    TERMINAL_STATUSES,
    UNLIMITED,
    GenerationRequest,
    PresetImage,
    RequestLog,
    RequestStatus,
    SubjectKind,
    utcnow,
)

from .ledger import UsageLedgerService

logger = logging.getLogger(__name__)


ALLOWED_REQUEST_TRANSITIONS: dict[RequestStatus, set[RequestStatus]] = {
    RequestStatus.PENDING: {RequestStatus.PROCESSING, RequestStatus.FAILED},
    RequestStatus.PROCESSING: {RequestStatus.COMPLETED, RequestStatus.FAILED},
    RequestStatus.COMPLETED: set(),
    RequestStatus.FAILED: set(),
}

INITIAL_STATUSES = {RequestStatus.PENDING, RequestStatus.COMPLETED}


class InvalidTransition(ValueError):
    """Raised when a request would move outside the lifecycle table."""


def create_request(
    session: Session,
    *,
    store: str,
    product_id: str,
    product_title: str,
    product_image: str,
    subject_kind: SubjectKind,
    preset: Optional[PresetImage] = None,
    status: RequestStatus = RequestStatus.PENDING,
    cached: bool = False,
    result_reference: Optional[str] = None,
    diagnostics: Optional[Dict[str, Any]] = None,
) -> GenerationRequest:
    """Insert a request row.

    Shopper photos are never written here; only a preset's public URL is kept
    as the subject reference.
    """

    if status not in INITIAL_STATUSES:
        raise InvalidTransition(f"Requests cannot be created as {status.value}")
    if status == RequestStatus.COMPLETED and not result_reference:
        raise InvalidTransition("Completed requests need a result reference")
    now = utcnow()
    request = GenerationRequest(
        id=uuid.uuid4(),
        store=store,
        product_id=product_id,
        product_title=product_title,
        product_image=product_image,
        subject_kind=subject_kind,
        preset_image_id=preset.id if preset is not None else None,
        subject_reference=preset.image_url if preset is not None else None,
        status=status,
        cached=cached,
        result_reference=result_reference,
        attempts=0,
        diagnostics=dict(diagnostics or {}),
        created_at=now,
        updated_at=now,
    )
    session.add(request)
    session.commit()
    return request


def transition(
    session: Session,
    request: GenerationRequest,
    status: RequestStatus,
    *,
    result_reference: Optional[str] = None,
    attempts: Optional[int] = None,
    error_code: Optional[str] = None,
    error_reason: Optional[str] = None,
    diagnostics: Optional[Dict[str, Any]] = None,
) -> GenerationRequest:
    current = request.status
    allowed = ALLOWED_REQUEST_TRANSITIONS.get(current, set())
    if status not in allowed:
        raise InvalidTransition(f"Invalid status transition {current.value} -> {status.value}")
    if status == RequestStatus.COMPLETED and not result_reference:
        raise InvalidTransition("Completed requests need a result reference")

    request.status = status
    if result_reference is not None:
        request.result_reference = result_reference
    if attempts is not None:
        request.attempts = attempts
    if error_code is not None:
        request.error_code = error_code
    if error_reason is not None:
        request.error_reason = error_reason
    if diagnostics:
        if request.diagnostics is None:
            request.diagnostics = {}
        request.diagnostics.update(diagnostics)
    request.updated_at = utcnow()
    session.commit()
    return request


def get_request(session: Session, request_id: uuid.UUID) -> Optional[GenerationRequest]:
    return session.get(GenerationRequest, request_id)


def list_requests(
    session: Session,
    store: str,
    status: Optional[RequestStatus] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[GenerationRequest], int]:
    filters = [GenerationRequest.store == store]
    if status is not None:
        filters.append(GenerationRequest.status == status)
    rows = session.scalars(
        select(GenerationRequest)
        .where(*filters)
        .order_by(GenerationRequest.created_at.desc())
        .limit(limit)
        .offset(offset)
    ).all()
    total = session.scalar(select(func.count()).select_from(GenerationRequest).where(*filters))
    return list(rows), total or 0


def _count(session: Session, store: str, status: Optional[RequestStatus] = None) -> int:
    stmt = select(func.count()).select_from(GenerationRequest).where(GenerationRequest.store == store)
    if status is not None:
        stmt = stmt.where(GenerationRequest.status == status)
    return session.scalar(stmt) or 0


def store_statistics(session: Session, store: str, ledger: UsageLedgerService) -> Dict[str, Any]:
    usage = ledger.snapshot(store)
    total = _count(session, store)
    completed = _count(session, store, RequestStatus.COMPLETED)
    failed = _count(session, store, RequestStatus.FAILED)
    cached = session.scalar(
        select(func.count())
        .select_from(GenerationRequest)
        .where(GenerationRequest.store == store, GenerationRequest.cached.is_(True))
    ) or 0
    if usage["credits_limit"] == UNLIMITED:
        remaining = UNLIMITED
    else:
        remaining = max(usage["credits_limit"] - usage["credits_used"], 0)
    return {
        "credits_used": usage["credits_used"],
        "credits_limit": usage["credits_limit"],
        "credits_remaining": remaining,
        "total_requests": total,
        "completed_requests": completed,
        "failed_requests": failed,
        "cached_requests": cached,
        "success_rate": round(completed / total * 100) if total else 0,
    }


def delete_requests(session: Session, *conditions: Any) -> int:
    """Delete matching requests together with their log entries."""

    ids = select(GenerationRequest.id).where(*conditions)
    session.execute(
        delete(RequestLog)
        .where(RequestLog.request_id.in_(ids))
        .execution_options(synchronize_session="fetch")
    )
    result = session.execute(
        delete(GenerationRequest)
        .where(*conditions)
        .execution_options(synchronize_session="fetch")
    )
    session.commit()
    return result.rowcount or 0


def cleanup_old_requests(
    session: Session, days_old: int = 30, now: Optional[datetime] = None
) -> int:
    """Remove terminal requests created more than ``days_old`` days ago."""

    cutoff = (now or utcnow()) - timedelta(days=days_old)
    removed = delete_requests(
        session,
        GenerationRequest.created_at < cutoff,
        GenerationRequest.status.in_(list(TERMINAL_STATUSES)),
    )
    logger.info("Removed %s requests older than %s days", removed, days_old)
    return removed
