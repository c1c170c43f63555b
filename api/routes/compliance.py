from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from shared.db import get_db
from shared.storage import ObjectStorage
from tryon import compliance

from ..dependencies import get_object_storage
from ..schemas.tryon import ComplianceRequest, ComplianceResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/compliance", tags=["compliance"])


def _respond(breakdown: dict[str, int]) -> JSONResponse:
    body = ComplianceResponse(breakdown=breakdown)
    return JSONResponse(content=body.model_dump(mode="json", by_alias=True))


@router.post("/shop-redact", response_model=ComplianceResponse)
def shop_redact(
    payload: ComplianceRequest,
    session: Session = Depends(get_db),
    storage: ObjectStorage = Depends(get_object_storage),
):
    logger.info("Shop redaction requested for %s", payload.shop_domain)
    return _respond(compliance.purge_store(session, payload.shop_domain, storage))


@router.post("/app-uninstalled", response_model=ComplianceResponse)
def app_uninstalled(
    payload: ComplianceRequest,
    session: Session = Depends(get_db),
    storage: ObjectStorage = Depends(get_object_storage),
):
    logger.info("App uninstalled for %s", payload.shop_domain)
    return _respond(compliance.uninstall_store(session, payload.shop_domain, storage))


@router.post("/customers-redact", response_model=ComplianceResponse)
def customers_redact(payload: ComplianceRequest, session: Session = Depends(get_db)):
    removed = compliance.redact_customer_requests(session, payload.shop_domain)
    return _respond({"requests": removed})
